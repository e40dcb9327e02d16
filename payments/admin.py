from django.contrib import admin
from django.contrib import messages
from unfold.admin import ModelAdmin, TabularInline

from core.exceptions import InvalidPayoutTransitionError
from .models import Payout, PayoutLineItem, PayoutSettings, PayoutStatus, Purchase
from .services import PayoutEngine


def _money(amount, currency):
    return f"{amount / 100:,.2f} {currency}"


class PayoutLineItemInline(TabularInline):
    model = PayoutLineItem
    fields = ('student_name', 'student_email', 'course_title', 'enrollment_date', 'amount')
    readonly_fields = fields
    extra = 0

    def has_add_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Payout)
class PayoutAdmin(ModelAdmin):
    inlines = [PayoutLineItemInline]
    list_display = ('payout_number', 'coach', 'period_start', 'period_end', 'total_students', 'net_display', 'status', 'payment_date')
    list_filter = ('status', 'coach', 'period_start')
    search_fields = ('payout_number', 'payment_reference', 'coach__user__email', 'coach__user__last_name')
    date_hierarchy = 'period_start'
    list_select_related = ('coach__user',)
    readonly_fields = (
        'payout_number', 'coach', 'period_start', 'period_end', 'total_students',
        'payment_rate_per_student', 'gross_amount', 'tax_amount', 'net_amount', 'currency',
        'status', 'payment_date', 'created_at', 'updated_at',
    )
    actions = ['mark_as_processing', 'mark_as_paid', 'mark_as_failed', 'cancel_payouts']

    @admin.display(description='Net', ordering='net_amount')
    def net_display(self, obj):
        return _money(obj.net_amount, obj.currency)

    def has_add_permission(self, request):
        # Payouts are generated from billable enrollments, never typed in
        return False

    def _transition(self, request, queryset, status):
        moved, rejected = 0, []
        for payout in queryset:
            try:
                PayoutEngine.update_payout_status(payout.pk, status)
                moved += 1
            except InvalidPayoutTransitionError:
                rejected.append(payout.payout_number)

        if moved:
            self.message_user(request, f"{moved} payouts marked as {status}.", messages.SUCCESS)
        if rejected:
            self.message_user(request, f"Not allowed for: {', '.join(rejected)}", messages.WARNING)

    @admin.action(description='Mark selected payouts as Processing')
    def mark_as_processing(self, request, queryset):
        self._transition(request, queryset, PayoutStatus.PROCESSING)

    @admin.action(description='Mark selected payouts as PAID')
    def mark_as_paid(self, request, queryset):
        self._transition(request, queryset, PayoutStatus.PAID)

    @admin.action(description='Mark selected payouts as Failed')
    def mark_as_failed(self, request, queryset):
        self._transition(request, queryset, PayoutStatus.FAILED)

    @admin.action(description='Cancel selected payouts (students become billable again)')
    def cancel_payouts(self, request, queryset):
        self._transition(request, queryset, PayoutStatus.CANCELLED)


@admin.register(PayoutSettings)
class PayoutSettingsAdmin(ModelAdmin):
    list_display = ('coach', 'rate_display', 'currency', 'is_active', 'updated_at')
    list_filter = ('is_active', 'currency')
    search_fields = ('coach__user__email', 'coach__user__first_name', 'coach__user__last_name')
    list_select_related = ('coach__user',)
    readonly_fields = ('created_at', 'updated_at')

    @admin.display(description='Rate per student', ordering='payment_rate_per_student')
    def rate_display(self, obj):
        return _money(obj.payment_rate_per_student, obj.currency)


@admin.register(Purchase)
class PurchaseAdmin(ModelAdmin):
    list_display = ('user', 'course', 'coach', 'amount_paid', 'status', 'purchased_at', 'claimed_by_payout')
    list_filter = ('status', 'coach')
    search_fields = ('user__email', 'course__title', 'transaction_id')
    date_hierarchy = 'purchased_at'
    readonly_fields = ('claimed_by_payout',)
    raw_id_fields = ('enrollment',)
