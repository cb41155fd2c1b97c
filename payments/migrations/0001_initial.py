import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Order',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('order_reference', models.CharField(db_index=True, max_length=64, unique=True)),
                ('status', models.CharField(default='pending', max_length=32)),
                ('payment_status', models.CharField(default='unpaid', max_length=32)),
                ('amount', models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ('customer_phone', models.CharField(blank=True, default='', max_length=16)),
                ('payment_completed_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
        ),
        migrations.CreateModel(
            name='MpesaPayment',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('checkout_request_id', models.CharField(max_length=100, unique=True)),
                ('merchant_request_id', models.CharField(blank=True, default='', max_length=100)),
                ('order_reference', models.CharField(db_index=True, max_length=64)),
                ('phone_number', models.CharField(max_length=15)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('description', models.CharField(blank=True, default='', max_length=64)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('completed', 'Completed'), ('cancelled', 'Cancelled'), ('failed', 'Failed'), ('timeout', 'Timeout')], db_index=True, default='pending', max_length=16)),
                ('result_code', models.CharField(blank=True, default='', max_length=32)),
                ('result_description', models.CharField(blank=True, default='', max_length=255)),
                ('resolved_by', models.CharField(blank=True, choices=[('callback', 'Callback'), ('poll', 'Poll')], default='', max_length=16)),
                ('mpesa_receipt', models.CharField(blank=True, default='', max_length=32)),
                ('transaction_date', models.DateTimeField(blank=True, null=True)),
                ('paid_amount', models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ('paid_phone_number', models.CharField(blank=True, default='', max_length=15)),
                ('raw_callback', models.JSONField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('resolved_at', models.DateTimeField(blank=True, null=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('order', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='payments', to='payments.order')),
            ],
            options={
                'ordering': ('-created_at',),
            },
        ),
    ]
