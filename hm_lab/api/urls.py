# hm_lab/api/urls.py
from __future__ import annotations

from django.urls import include, path
from rest_framework.routers import DefaultRouter

from hm_lab.billing.api.views import (
    AdminPaymentView,
    LabPaymentViewSet,
    PatientPaymentsView,
    PendingPaymentsView,
)
from hm_lab.catalog.api.views import LabTestViewSet
from hm_lab.lab.api.views import LabItemViewSet
from hm_lab.orders.api.views import LabOrderViewSet

router = DefaultRouter()

router.register(r"lab/tests", LabTestViewSet, basename="lab-tests")
router.register(r"lab/orders", LabOrderViewSet, basename="lab-orders")
router.register(r"lab/items", LabItemViewSet, basename="lab-items")
router.register(r"lab/payments", LabPaymentViewSet, basename="lab-payments")

urlpatterns = [
    path(
        "lab/patients/<int:patient_id>/pending-payments/",
        PendingPaymentsView.as_view(),
        name="lab-patient-pending-payments",
    ),
    path(
        "lab/patients/<int:patient_id>/payments/",
        PatientPaymentsView.as_view(),
        name="lab-patient-payments",
    ),
    path(
        "lab/patients/<int:patient_id>/payments/admin/",
        AdminPaymentView.as_view(),
        name="lab-patient-admin-payment",
    ),
    path("", include(router.urls)),
]
