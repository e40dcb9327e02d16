import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('accounts', '0001_initial'),
        ('coaching_availability', '0001_initial'),
        ('coaching_core', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Enrollment',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('status', models.CharField(choices=[('confirmed', 'Confirmed'), ('cancelled', 'Cancelled'), ('completed', 'Completed')], default='confirmed', max_length=20)),
                ('payment_status', models.CharField(choices=[('paid', 'Paid'), ('skipped', 'Skipped'), ('failed', 'Failed')], max_length=20)),
                ('scheduled_at', models.DateTimeField()),
                ('amount_paid', models.PositiveIntegerField(default=0, help_text='Minor currency units.')),
                ('payment_reference', models.CharField(blank=True, max_length=255)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('coach', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='enrollments', to='accounts.coachprofile')),
                ('course', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='enrollments', to='coaching_core.course')),
                ('time_slot', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='enrollments', to='coaching_availability.timeslot')),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='enrollments', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ['-scheduled_at'],
                'indexes': [models.Index(fields=['coach', 'scheduled_at'], name='enrollment_coach_sched_idx')],
            },
        ),
        migrations.CreateModel(
            name='EnrollmentDraft',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('stage', models.PositiveSmallIntegerField(choices=[(1, 'Course preview'), (2, 'Coach selection'), (3, 'Time slot selection'), (4, 'Review'), (5, 'Payment')], default=1)),
                ('user_type', models.CharField(choices=[('individual', 'Individual'), ('employee', 'Employee')], default='individual', max_length=20)),
                ('holds_reservation', models.BooleanField(default=False)),
                ('payment_state', models.CharField(blank=True, choices=[('', 'Not started'), ('awaiting', 'Awaiting payment'), ('confirmed', 'Payment confirmed'), ('failed', 'Payment failed'), ('cancelled', 'Payment cancelled'), ('expired', 'Payment expired')], default='', max_length=20)),
                ('order_ref', models.CharField(blank=True, max_length=64, null=True, unique=True)),
                ('gateway_order_id', models.CharField(blank=True, max_length=255)),
                ('checkout_url', models.URLField(blank=True, max_length=2048)),
                ('payment_started_at', models.DateTimeField(blank=True, null=True)),
                ('last_error', models.CharField(blank=True, max_length=255)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('coach', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to='accounts.coachprofile')),
                ('course', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to='coaching_core.course')),
                ('time_slot', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to='coaching_availability.timeslot')),
                ('user', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='enrollment_draft', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Enrollment Draft',
                'verbose_name_plural': 'Enrollment Drafts',
                'indexes': [models.Index(fields=['payment_state', 'payment_started_at'], name='draft_payment_state_idx')],
            },
        ),
    ]
