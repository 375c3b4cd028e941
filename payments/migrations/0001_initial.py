import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('orders', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='VNPayTransaction',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('txn_ref', models.CharField(db_index=True, max_length=100, unique=True)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=14)),
                ('order_info', models.CharField(max_length=255)),
                ('order_type', models.CharField(default='other', max_length=32)),
                ('locale', models.CharField(default='vn', max_length=8)),
                ('ip_addr', models.CharField(blank=True, default='', max_length=45)),
                ('create_date', models.CharField(max_length=14)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('success', 'Success'), ('failed', 'Failed'), ('expired', 'Expired')], db_index=True, default='pending', max_length=16)),
                ('response_code', models.CharField(blank=True, default='', max_length=8)),
                ('response_message', models.CharField(blank=True, default='', max_length=255)),
                ('transaction_no', models.CharField(blank=True, default='', max_length=64)),
                ('bank_code', models.CharField(blank=True, default='', max_length=32)),
                ('pay_date', models.CharField(blank=True, default='', max_length=14)),
                ('response_payload', models.JSONField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('order', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='vnpay_transactions', to='orders.order')),
            ],
            options={
                'ordering': ('-created_at',),
            },
        ),
        migrations.CreateModel(
            name='PaymentHistory',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('method', models.CharField(default='VNPAY', max_length=16)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=14)),
                ('status', models.CharField(choices=[('success', 'Success'), ('failed', 'Failed')], max_length=16)),
                ('transaction_no', models.CharField(blank=True, default='', max_length=64)),
                ('payment_details', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('order', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='payment_history', to='orders.order')),
                ('transaction', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='history', to='payments.vnpaytransaction')),
            ],
            options={
                'verbose_name_plural': 'payment history',
                'ordering': ('-created_at',),
            },
        ),
    ]
