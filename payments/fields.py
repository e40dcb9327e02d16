# payments/fields.py
import json

from django import forms
from encrypted_model_fields.fields import EncryptedCharField

from .details import display_details, normalise_details


class PayoutDetailsFormField(forms.CharField):
    """Textarea that shows stored details the way they were typed in."""

    widget = forms.Textarea

    def prepare_value(self, value):
        if isinstance(value, dict):
            return display_details(value)
        return super().prepare_value(value)

    def clean(self, value):
        value = super().clean(value)
        return normalise_details(value)


class PayoutDetailsField(EncryptedCharField):
    """
    Encrypted column holding bank or tax details in their tagged form
    (see payments.details). Values are JSON-encoded before encryption and
    decoded after decryption.
    """

    # Python value -> JSON string; encryption happens after this on save
    def get_prep_value(self, value):
        if isinstance(value, str):
            value = normalise_details(value)
        if value is None:
            return None
        return json.dumps(value)

    def to_python(self, value):
        # Already decoded (assigned in Python, or cleaned by a form)
        if isinstance(value, dict):
            return value
        value = super().to_python(value)
        if value is None:
            return None
        # Stored JSON comes back tagged; rows written as plain text become freeform
        return normalise_details(value)

    def from_db_value(self, value, expression, connection):
        return self.to_python(value)

    def value_to_string(self, obj):
        return json.dumps(self.value_from_object(obj))

    def formfield(self, **kwargs):
        kwargs.setdefault('form_class', PayoutDetailsFormField)
        kwargs.setdefault('required', False)
        return super().formfield(**kwargs)
