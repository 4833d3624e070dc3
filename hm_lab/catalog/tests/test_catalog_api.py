import pytest

from hm_lab.catalog.models import LabTest


@pytest.mark.django_db
def test_list_filters_by_category_and_search(patient_client, cbc, lipid):
    resp = patient_client.get("/api/v1/lab/tests/?category=hematology")
    assert resp.status_code == 200
    assert [t["name"] for t in resp.data["results"]] == ["CBC"]

    resp = patient_client.get("/api/v1/lab/tests/?search=lipid")
    assert [t["name"] for t in resp.data["results"]] == ["Lipid Profile"]

    resp = patient_client.get("/api/v1/lab/tests/?min_price=500")
    assert [t["name"] for t in resp.data["results"]] == ["Lipid Profile"]


@pytest.mark.django_db
def test_inactive_tests_hidden_unless_admin_asks(patient_client, api_client, cbc):
    LabTest.objects.create(name="Retired", price="5.00", is_active=False)

    resp = patient_client.get("/api/v1/lab/tests/?include_inactive=1")
    assert [t["name"] for t in resp.data["results"]] == ["CBC"]

    resp = api_client.get("/api/v1/lab/tests/?include_inactive=1")
    assert {t["name"] for t in resp.data["results"]} == {"CBC", "Retired"}


@pytest.mark.django_db
def test_categories(patient_client, cbc, lipid):
    resp = patient_client.get("/api/v1/lab/tests/categories/")

    assert resp.status_code == 200
    assert resp.data == {"categories": ["Biochemistry", "Hematology"]}


@pytest.mark.django_db
def test_admin_crud(api_client):
    resp = api_client.post(
        "/api/v1/lab/tests/",
        {"name": "ESR", "price": "120.00", "category": "Hematology", "sample_type": "blood"},
        format="json",
    )
    assert resp.status_code == 201, resp.content
    test_id = resp.data["id"]

    resp = api_client.patch(f"/api/v1/lab/tests/{test_id}/", {"price": "150.00"}, format="json")
    assert resp.status_code == 200
    assert resp.data["price"] == "150.00"

    resp = api_client.delete(f"/api/v1/lab/tests/{test_id}/")
    assert resp.status_code == 200
    assert resp.data == {"id": test_id, "result": "deleted"}


@pytest.mark.django_db
def test_non_admin_cannot_edit_catalog(lab_client, cbc):
    resp = lab_client.post("/api/v1/lab/tests/", {"name": "ESR", "price": "1.00"}, format="json")
    assert resp.status_code == 403

    resp = lab_client.delete(f"/api/v1/lab/tests/{cbc.id}/")
    assert resp.status_code == 403


@pytest.mark.django_db
def test_anonymous_is_rejected(client, cbc):
    resp = client.get("/api/v1/lab/tests/")

    assert resp.status_code in (401, 403)
    assert "error" in resp.json()
