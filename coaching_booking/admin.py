from django.contrib import admin
from django.contrib import messages
from unfold.admin import ModelAdmin

from .models import Enrollment, EnrollmentDraft, EnrollmentStatus


@admin.register(Enrollment)
class EnrollmentAdmin(ModelAdmin):
    list_display = ('user', 'course', 'coach', 'scheduled_at', 'status', 'payment_status', 'amount_display', 'claimed_by_payout')
    list_filter = ('status', 'payment_status', 'coach')
    search_fields = ('user__email', 'user__first_name', 'user__last_name', 'course__title', 'payment_reference')
    readonly_fields = ('scheduled_at', 'amount_paid', 'payment_reference', 'claimed_by_payout', 'created_at')
    date_hierarchy = 'scheduled_at'
    list_select_related = ('user', 'course', 'coach__user', 'claimed_by_payout')
    actions = ['mark_completed', 'cancel_enrollments']

    @admin.display(description='Amount')
    def amount_display(self, obj):
        return f"{obj.amount_paid / 100:.2f}"

    @admin.action(description='Mark selected enrollments as Completed')
    def mark_completed(self, request, queryset):
        updated = sum(1 for enrollment in queryset if enrollment.mark_completed())
        self.message_user(request, f"Marked {updated} enrollments as completed.", messages.SUCCESS)

    @admin.action(description='Cancel selected enrollments and free their seats')
    def cancel_enrollments(self, request, queryset):
        cancelled = 0
        for enrollment in queryset.filter(status=EnrollmentStatus.CONFIRMED).select_related('time_slot'):
            if enrollment.cancel():
                cancelled += 1
        self.message_user(request, f"Cancelled {cancelled} enrollments.", messages.SUCCESS)


@admin.register(EnrollmentDraft)
class EnrollmentDraftAdmin(ModelAdmin):
    list_display = ('user', 'stage', 'course', 'coach', 'time_slot', 'payment_state', 'holds_reservation', 'updated_at')
    list_filter = ('stage', 'payment_state', 'holds_reservation')
    search_fields = ('user__email', 'order_ref', 'gateway_order_id')
    readonly_fields = [f.name for f in EnrollmentDraft._meta.fields]

    def has_add_permission(self, request):
        return False
