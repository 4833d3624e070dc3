import pytest
from django.contrib.auth.models import Group, User
from django.core.management import call_command
from django.test import RequestFactory

from hm_lab.common.idempotency import CachedResponse, load_response, save_response
from hm_lab.common.models import IdempotencyRecord
from hm_lab.common.permissions import ALL_ROLES, ROLE_ADMIN, ROLE_READONLY, is_admin, user_roles


@pytest.mark.django_db
def test_ensure_roles_is_idempotent():
    call_command("ensure_roles")
    call_command("ensure_roles")

    assert set(Group.objects.values_list("name", flat=True)) == set(ALL_ROLES)


@pytest.mark.django_db
def test_roles_from_groups(lab_user):
    superuser = User.objects.create_superuser(username="root", password="x")
    plain = User.objects.create_user(username="plain", password="x")

    assert user_roles(lab_user) == {"LAB"}
    assert user_roles(superuser) == {ROLE_ADMIN}
    assert user_roles(plain) == {ROLE_READONLY}
    assert is_admin(superuser)
    assert not is_admin(lab_user)


def _request(user, key="k1", path="/api/v1/lab/orders/"):
    req = RequestFactory().post(path, HTTP_IDEMPOTENCY_KEY=key)
    req.user = user
    return req


@pytest.mark.django_db
def test_idempotency_store_in_db(settings, user, lab_user):
    settings.COMMON_IDEMPOTENCY_USE_DB = True

    assert load_response(_request(user)) is None

    save_response(_request(user), {"id": 5}, status_code=201)
    save_response(_request(user), {"id": 6}, status_code=201)

    cached = load_response(_request(user))
    assert cached == CachedResponse(data={"id": 5}, status_code=201)
    assert load_response(_request(lab_user)) is None
    assert load_response(_request(user, path="/api/v1/lab/tests/")) is None
    assert IdempotencyRecord.objects.count() == 1


@pytest.mark.django_db
def test_idempotency_store_in_memory(settings, user):
    settings.COMMON_IDEMPOTENCY_USE_DB = False

    save_response(_request(user, key="mem-1"), {"ok": True}, status_code=200)

    assert load_response(_request(user, key="mem-1")).data == {"ok": True}
    assert load_response(_request(user, key="  ")) is None
    assert not IdempotencyRecord.objects.exists()
