# hm_lab/patients/selectors.py
from __future__ import annotations

from rest_framework.exceptions import NotFound, PermissionDenied

from hm_lab.common.permissions import ROLE_PATIENT, user_roles
from hm_lab.patients.models import Patient


def get_patient(*, patient_id: int) -> Patient:
    try:
        return Patient.objects.get(id=patient_id)
    except Patient.DoesNotExist:
        raise NotFound("Patient not found.")


def patient_for_request(*, user, patient_id: int) -> Patient:
    """
    Loads the patient and enforces that PATIENT-only users act on their own record.
    Staff roles may act on any patient.
    """
    patient = get_patient(patient_id=patient_id)

    roles = user_roles(user)
    if roles and roles <= {ROLE_PATIENT} and patient.user_id != user.id:
        raise PermissionDenied("You may only act on your own patient record.")
    return patient
