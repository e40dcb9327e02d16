from django.contrib import admin
from unfold.admin import ModelAdmin

from .models import TimeSlot


@admin.register(TimeSlot)
class TimeSlotAdmin(ModelAdmin):
    list_display = ('coach', 'date', 'start_time', 'end_time', 'slot_type', 'occupancy', 'is_available')
    list_filter = ('slot_type', 'is_available', 'date')
    search_fields = ('coach__user__first_name', 'coach__user__last_name')
    readonly_fields = ('starts_at', 'ends_at', 'current_bookings', 'created_at', 'updated_at')
    date_hierarchy = 'date'
    list_select_related = ('coach__user',)

    @admin.display(description='Booked')
    def occupancy(self, obj):
        return f"{obj.current_bookings}/{obj.max_bookings}"
