# hm_lab/billing/api/serializers.py
from __future__ import annotations

from rest_framework import serializers

from hm_lab.billing.models import LabPayment, PaymentAllocation, PaymentMethod

COUNTER_METHODS = [
    PaymentMethod.OFFLINE_CASH,
    PaymentMethod.OFFLINE_CARD,
    PaymentMethod.BANK_TRANSFER,
    PaymentMethod.MIXED,
]


class PaymentAllocationSerializer(serializers.ModelSerializer):
    item_ref = serializers.SerializerMethodField()

    class Meta:
        model = PaymentAllocation
        fields = ["id", "payment", "order_item", "prescription", "test_name", "item_ref", "amount", "created_at"]
        read_only_fields = fields

    def get_item_ref(self, obj) -> str:
        if obj.order_item_id:
            return f"order-item-{obj.order_item_id}"
        return f"prescription-{obj.prescription_id}:{obj.test_name}"


class LabPaymentSerializer(serializers.ModelSerializer):
    allocations = PaymentAllocationSerializer(many=True, read_only=True)

    class Meta:
        model = LabPayment
        fields = [
            "id",
            "reference",
            "patient",
            "amount",
            "target",
            "method",
            "status",
            "gateway_payment_id",
            "transaction_id",
            "created_by_user_id",
            "notes",
            "completed_at",
            "refunded_amount",
            "refund_transaction_id",
            "refund_reason",
            "refunded_at",
            "allocations",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class PaymentTargetSerializer(serializers.Serializer):
    orders = serializers.ListField(child=serializers.IntegerField(min_value=1), required=False, default=list)
    items = serializers.ListField(child=serializers.JSONField(), required=False, default=list)


class BatchPaymentCreateSerializer(serializers.Serializer):
    """
    The idempotency key comes from the Idempotency-Key header, or `idempotency_key` in the body.
    """
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    target = PaymentTargetSerializer()
    method = serializers.ChoiceField(choices=PaymentMethod.choices, default=PaymentMethod.BKASH)
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    idempotency_key = serializers.CharField(required=False, allow_blank=True, max_length=128)


class AdminPaymentCreateSerializer(BatchPaymentCreateSerializer):
    method = serializers.ChoiceField(choices=COUNTER_METHODS, default=PaymentMethod.OFFLINE_CASH)


class GatewayInitiateSerializer(serializers.Serializer):
    patient_id = serializers.IntegerField()
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    target = PaymentTargetSerializer()
    idempotency_key = serializers.CharField(required=False, allow_blank=True, max_length=128)


class PaymentCompleteSerializer(serializers.Serializer):
    transaction_id = serializers.CharField(required=False, allow_blank=True, max_length=128, default="")


class PaymentRefundSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, max_length=255, default="")


class MultiPatientPaymentSerializer(serializers.Serializer):
    """
    Counter payment over items of several patients. Without `amount` each
    patient pays what is still due on the listed items.
    """
    items = serializers.ListField(child=serializers.JSONField(), allow_empty=False)
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True, default=None)
    method = serializers.ChoiceField(choices=COUNTER_METHODS, default=PaymentMethod.OFFLINE_CASH)
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    idempotency_key = serializers.CharField(required=False, allow_blank=True, max_length=100)
