from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.views.decorators.http import require_GET

from .models import EnrollmentDraft
from .services import EnrollmentWorkflow


@login_required
@require_GET
def payment_return(request):
    """
    Where Stripe Checkout sends the client back to. A cancelled checkout
    releases the held seat straight away instead of waiting for expiry.
    """
    order_ref = request.GET.get('order', '')
    draft = EnrollmentDraft.objects.filter(user=request.user, order_ref=order_ref).first()
    if draft is None:
        return JsonResponse({'error': 'Unknown order.'}, status=404)

    if request.GET.get('cancelled'):
        EnrollmentWorkflow.handle_payment_cancel(order_ref)
        draft.refresh_from_db()

    return JsonResponse({
        'order_ref': order_ref,
        'stage': draft.stage,
        'payment_state': draft.payment_state,
        'error': draft.last_error,
    })
