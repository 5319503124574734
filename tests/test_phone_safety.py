# tests/test_phone_safety.py
import pytest

from common.errors import ValidationError
from common.phone import hash_phone, mask_phone, normalize_phone
from common.safety import find_safety_keywords, is_large_party


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("(555) 201-0001", "+15552010001"),
        ("555.201.0001", "+15552010001"),
        ("1 555 201 0001", "+15552010001"),
        ("+44 20 7946 0958", "+442079460958"),
    ],
)
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


@pytest.mark.parametrize("raw", ["", None, "12", "call me maybe", "555-2010"])
def test_normalize_phone_rejects(raw):
    with pytest.raises(ValidationError) as ei:
        normalize_phone(raw)
    assert ei.value.code == "INVALID_PHONE"


def test_hash_ignores_formatting():
    assert hash_phone("+1 (555) 201-0001") == hash_phone("15552010001")
    assert len(hash_phone("15552010001")) == 64


def test_mask_phone():
    assert mask_phone("+15552010001") == "+1***-***-0001"
    assert mask_phone("+442079460958") == "***-***-0958"
    assert mask_phone(None) == "***-***-****"


def test_safety_keywords_match_words_not_fragments():
    assert find_safety_keywords("Severe PEANUT allergy, please be careful") == ["allergy", "peanut allergy"]
    assert find_safety_keywords("She is gluten-free") == ["gluten free"]
    assert find_safety_keywords("window seat, birthday cake") == []
    assert find_safety_keywords(None) == []
    assert find_safety_keywords("no allergies") == []


def test_custom_keywords():
    assert find_safety_keywords("Sesame sensitivity", ["sesame"]) == ["sesame"]


def test_large_party_threshold_is_exclusive():
    assert not is_large_party(8, 8)
    assert is_large_party(9, 8)
