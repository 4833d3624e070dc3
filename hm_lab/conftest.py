# hm_lab/conftest.py
from decimal import Decimal

import pytest
from django.contrib.auth import get_user_model
from django.contrib.auth.models import Group
from rest_framework.test import APIClient

from hm_lab.catalog.models import LabTest
from hm_lab.catalog.pricing import get_price_cache
from hm_lab.common.permissions import ROLE_ADMIN, ROLE_BILLING, ROLE_LAB, ROLE_PATIENT
from hm_lab.orders.services import OrderService
from hm_lab.patients.models import Patient
from hm_lab.prescriptions.models import Prescription


def make_user(username, *roles):
    User = get_user_model()
    user = User.objects.create_user(username=username, password="testpass", is_active=True)
    for role in roles:
        group, _ = Group.objects.get_or_create(name=role)
        user.groups.add(group)
    return user


def client_for(user):
    c = APIClient()
    c.force_authenticate(user=user)
    return c


@pytest.fixture(autouse=True)
def _fresh_price_cache():
    # the cache is process-wide; each test sees its own catalog
    get_price_cache().invalidate()
    yield
    get_price_cache().invalidate()


@pytest.fixture
def media(settings, tmp_path):
    settings.MEDIA_ROOT = tmp_path
    return tmp_path


@pytest.fixture
def user(db):
    """Admin user (ADMIN group)."""
    return make_user("testuser", ROLE_ADMIN)


@pytest.fixture
def lab_user(db):
    return make_user("labtech", ROLE_LAB)


@pytest.fixture
def billing_user(db):
    return make_user("cashier", ROLE_BILLING)


@pytest.fixture
def patient_user(db):
    return make_user("patient1", ROLE_PATIENT)


@pytest.fixture
def api_client(user):
    return client_for(user)


@pytest.fixture
def lab_client(lab_user):
    return client_for(lab_user)


@pytest.fixture
def billing_client(billing_user):
    return client_for(billing_user)


@pytest.fixture
def patient_client(patient_user):
    return client_for(patient_user)


@pytest.fixture
def patient(db, patient_user):
    return Patient.objects.create(
        user_id=patient_user.id,
        full_name="Test Patient",
        phone="01700000000",
        mrn="MRN-TEST-001",
    )


@pytest.fixture
def other_patient(db):
    return Patient.objects.create(full_name="Other Patient", mrn="MRN-TEST-002")


@pytest.fixture
def cbc(db):
    return LabTest.objects.create(name="CBC", category="Hematology", price=Decimal("300.00"))


@pytest.fixture
def lipid(db):
    return LabTest.objects.create(name="Lipid Profile", category="Biochemistry", price=Decimal("700.00"))


@pytest.fixture
def order(patient, cbc, lipid):
    """Order of CBC (300) + Lipid Profile (700); total 1000, global threshold 0.5."""
    return OrderService.create_order(patient_id=patient.id, test_ids=[cbc.id, lipid.id])


@pytest.fixture
def prescription(patient, cbc):
    return Prescription.objects.create(
        patient=patient,
        diagnosis="Routine check",
        tests=[
            {"name": "CBC", "status": "ordered"},
            {"name": "Urine RE", "price": "200.00", "status": "ordered"},
        ],
    )
