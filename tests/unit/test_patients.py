"""Unit tests for CPF validation and patient lookup"""

import pytest

from app.services.patients import find_patient_by_cpf, format_cpf, is_valid_cpf, normalize_cpf


class TestCpf:
    def test_normalize_strips_punctuation(self):
        assert normalize_cpf("529.982.247-25") == "52998224725"

    def test_format(self):
        assert format_cpf("52998224725") == "529.982.247-25"

    @pytest.mark.parametrize("cpf", ["52998224725", "529.982.247-25", "111.444.777-35"])
    def test_valid(self, cpf):
        assert is_valid_cpf(cpf)

    @pytest.mark.parametrize("cpf", ["52998224724", "11111111111", "1234567890", "", "abc"])
    def test_invalid(self, cpf):
        assert not is_valid_cpf(cpf)


@pytest.mark.asyncio
async def test_finds_registered_patient(fake_db, patient, test_clinic_id, test_patient_cpf):
    result = await find_patient_by_cpf(test_clinic_id, test_patient_cpf)

    assert result["found"] is True
    assert result["patient"] == {"id": patient["id"], "name": "Maria Souza"}
    assert result["reason"] is None


@pytest.mark.asyncio
async def test_finds_patient_stored_with_punctuation(fake_db, clinic, test_clinic_id):
    fake_db.seed("patients", clinic_id=clinic["id"], name="João Lima", cpf="111.444.777-35", is_active=True)

    result = await find_patient_by_cpf(test_clinic_id, "11144477735")

    assert result["found"] is True
    assert result["patient"]["name"] == "João Lima"


@pytest.mark.asyncio
async def test_unregistered_cpf_is_not_found(fake_db, clinic, test_clinic_id):
    result = await find_patient_by_cpf(test_clinic_id, "111.444.777-35")

    assert result["found"] is False
    assert result["patient"] is None
    assert result["reason"] == "not_registered"


@pytest.mark.asyncio
async def test_invalid_cpf_skips_the_lookup(fake_db, clinic, test_clinic_id):
    result = await find_patient_by_cpf(test_clinic_id, "123")

    assert result["reason"] == "invalid_cpf"
    assert ("patients", "select") not in fake_db.calls


@pytest.mark.asyncio
async def test_inactive_patient(fake_db, patient, test_clinic_id, test_patient_cpf):
    patient_row = fake_db.rows("patients")[0]
    patient_row["is_active"] = False

    result = await find_patient_by_cpf(test_clinic_id, test_patient_cpf)

    assert result["found"] is False
    assert result["reason"] == "inactive"


@pytest.mark.asyncio
async def test_patient_of_another_clinic_is_not_visible(fake_db, clinic, test_clinic_id, test_patient_cpf):
    fake_db.seed("patients", clinic_id="00000000-0000-0000-0000-000000000099", name="Other", cpf="52998224725", is_active=True)

    result = await find_patient_by_cpf(test_clinic_id, test_patient_cpf)

    assert result["reason"] == "not_registered"
