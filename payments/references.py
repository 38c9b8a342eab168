"""Documents a payment can settle.

A payment points at exactly one sales order or purchase order. The pair is
stored as ``reference_type`` + ``reference_id`` and handled in code as a
``DocumentReference``.
"""

import uuid
from dataclasses import dataclass

from rest_framework.exceptions import NotFound, ValidationError

from payments.models import Payment
from procurement.models import PurchaseOrder
from sales.models import Order

DOCUMENT_MODELS = {
    Payment.ReferenceType.ORDER: Order,
    Payment.ReferenceType.PURCHASE_ORDER: PurchaseOrder,
}


@dataclass(frozen=True)
class DocumentReference:
    kind: str
    id: uuid.UUID

    def __post_init__(self):
        if self.kind not in DOCUMENT_MODELS:
            raise ValidationError({"reference_type": [f"Unknown reference type '{self.kind}'."]})
        if not isinstance(self.id, uuid.UUID):
            try:
                object.__setattr__(self, "id", uuid.UUID(str(self.id)))
            except ValueError:
                raise ValidationError({"reference_id": ["Must be a valid UUID."]})

    @classmethod
    def order(cls, order_id):
        return cls(Payment.ReferenceType.ORDER, order_id)

    @classmethod
    def purchase_order(cls, purchase_order_id):
        return cls(Payment.ReferenceType.PURCHASE_ORDER, purchase_order_id)

    @classmethod
    def of(cls, payment):
        return cls(payment.reference_type, payment.reference_id)

    @property
    def is_purchase_order(self):
        return self.kind == Payment.ReferenceType.PURCHASE_ORDER

    @property
    def model(self):
        return DOCUMENT_MODELS[self.kind]

    def resolve(self, *, lock=False, required=True):
        qs = self.model.objects.all()
        if lock:
            qs = qs.select_for_update()
        document = qs.filter(pk=self.id).first()
        if document is None and required:
            raise NotFound(f"Referenced {Payment.ReferenceType(self.kind).label.lower()} not found.")
        return document

    def payments(self):
        return Payment.objects.filter(reference_type=self.kind, reference_id=self.id)
