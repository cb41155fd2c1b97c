from django.contrib import admin
from .models import MpesaPayment, Order

@admin.register(MpesaPayment)
class MpesaPaymentAdmin(admin.ModelAdmin):
    list_display = ("checkout_request_id", "order_reference", "phone_number", "amount", "status", "resolved_by", "created_at", "resolved_at")
    search_fields = ("checkout_request_id", "merchant_request_id", "order_reference", "phone_number", "mpesa_receipt")
    list_filter = ("status", "resolved_by", "created_at")
    readonly_fields = ("created_at", "updated_at", "resolved_at", "raw_callback")

@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("order_reference", "status", "payment_status", "amount", "customer_phone", "created_at")
    search_fields = ("order_reference", "customer_phone")
    list_filter = ("status", "payment_status")
    readonly_fields = ("created_at", "updated_at", "payment_completed_at")
