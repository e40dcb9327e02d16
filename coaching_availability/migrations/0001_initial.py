import django.core.validators
import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('accounts', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='TimeSlot',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('date', models.DateField(help_text="Day of the session in the coach's time zone.")),
                ('start_time', models.TimeField()),
                ('end_time', models.TimeField()),
                ('starts_at', models.DateTimeField(db_index=True, editable=False)),
                ('ends_at', models.DateTimeField(editable=False)),
                ('max_bookings', models.PositiveIntegerField(default=1, validators=[django.core.validators.MinValueValidator(1)])),
                ('current_bookings', models.PositiveIntegerField(default=0, editable=False)),
                ('slot_type', models.CharField(choices=[('coaching', 'Coaching'), ('consultation', 'Consultation')], default='coaching', max_length=20)),
                ('is_available', models.BooleanField(default=True, help_text='Coaches can switch a slot off without deleting it.')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('coach', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='time_slots', to='accounts.coachprofile')),
            ],
            options={
                'verbose_name': 'Time Slot',
                'verbose_name_plural': 'Time Slots',
                'ordering': ['starts_at'],
                'indexes': [models.Index(fields=['coach', 'starts_at'], name='timeslot_coach_starts_idx')],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('max_bookings__gte', 1)), name='timeslot_max_bookings_positive'),
                    models.CheckConstraint(condition=models.Q(('current_bookings__gte', 0), ('current_bookings__lte', models.F('max_bookings'))), name='timeslot_bookings_within_capacity'),
                ],
            },
        ),
    ]
