import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models

import payments.fields


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('accounts', '0001_initial'),
        ('coaching_booking', '0001_initial'),
        ('coaching_core', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='PayoutSettings',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('payment_rate_per_student', models.PositiveIntegerField(help_text='Amount owed per billable student, in minor currency units.')),
                ('currency', models.CharField(default='INR', max_length=3)),
                ('bank_details', payments.fields.PayoutDetailsField(blank=True, help_text='JSON object, e.g. {"account_number": "...", "ifsc": "..."}, or plain text.', null=True)),
                ('tax_details', payments.fields.PayoutDetailsField(blank=True, help_text='JSON object, e.g. {"pan": "...", "gst": "..."}, or plain text.', null=True)),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('coach', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='payout_settings', to='accounts.coachprofile')),
            ],
            options={
                'verbose_name': 'Coach Payout Settings',
                'verbose_name_plural': 'Coach Payout Settings',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='Payout',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('payout_number', models.CharField(editable=False, max_length=32, unique=True)),
                ('period_start', models.DateField()),
                ('period_end', models.DateField()),
                ('total_students', models.PositiveIntegerField()),
                ('payment_rate_per_student', models.PositiveIntegerField()),
                ('gross_amount', models.PositiveIntegerField()),
                ('tax_amount', models.PositiveIntegerField(default=0)),
                ('net_amount', models.IntegerField(editable=False, help_text='Always gross minus tax.')),
                ('currency', models.CharField(default='INR', max_length=3)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('processing', 'Processing'), ('paid', 'Paid'), ('failed', 'Failed'), ('cancelled', 'Cancelled')], default='pending', max_length=20)),
                ('payment_date', models.DateTimeField(blank=True, null=True)),
                ('payment_reference', models.CharField(blank=True, max_length=255)),
                ('notes', models.TextField(blank=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('coach', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='payouts', to='accounts.coachprofile')),
            ],
            options={
                'ordering': ['-created_at'],
                'constraints': [
                    models.UniqueConstraint(condition=models.Q(('status', 'cancelled'), _negated=True), fields=('coach', 'period_start', 'period_end'), name='unique_open_payout_per_coach_period'),
                    models.CheckConstraint(condition=models.Q(('period_start__lte', models.F('period_end'))), name='payout_period_ordered'),
                    models.CheckConstraint(condition=models.Q(('net_amount', models.F('gross_amount') - models.F('tax_amount'))), name='payout_net_is_gross_minus_tax'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Purchase',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('amount_paid', models.PositiveIntegerField(default=0)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('completed', 'Completed'), ('failed', 'Failed'), ('refunded', 'Refunded')], default='pending', max_length=20)),
                ('transaction_id', models.CharField(blank=True, max_length=255)),
                ('purchased_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('claimed_by_payout', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='claimed_purchases', to='payments.payout')),
                ('coach', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='purchases', to='accounts.coachprofile')),
                ('course', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='purchases', to='coaching_core.course')),
                ('enrollment', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='purchases', to='coaching_booking.enrollment')),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='purchases', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ['-purchased_at'],
            },
        ),
        migrations.CreateModel(
            name='PayoutLineItem',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('student_name', models.CharField(max_length=255)),
                ('student_email', models.EmailField(blank=True, max_length=254)),
                ('course_title', models.CharField(max_length=255)),
                ('enrollment_date', models.DateTimeField()),
                ('amount', models.PositiveIntegerField()),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('enrollment', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='payout_line_items', to='coaching_booking.enrollment')),
                ('payout', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='line_items', to='payments.payout')),
                ('purchase', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='payout_line_items', to='payments.purchase')),
            ],
            options={
                'ordering': ['-enrollment_date'],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(models.Q(('enrollment__isnull', False), ('purchase__isnull', True)), models.Q(('enrollment__isnull', True), ('purchase__isnull', False)), _connector='OR'), name='payout_line_item_single_source'),
                ],
            },
        ),
    ]
