import pytest

from casechat.core.errors import InvalidArgument
from casechat.services.whatsapp_gateway import to_channel_address
from casechat.services.whatsapp_service import external_sender_id, mask_phone, normalize_phone


@pytest.mark.parametrize(
    "raw",
    [
        "whatsapp:+15550100001",
        "+15550100001",
        "15550100001",
        "+1 (555) 010-0001",
        "  whatsapp:+1 555 010 0001 ",
    ],
)
def test_normalize_phone_equivalent_forms(raw):
    assert normalize_phone(raw) == "15550100001"


def test_normalize_phone_rejects_empty():
    with pytest.raises(InvalidArgument):
        normalize_phone("")
    with pytest.raises(InvalidArgument):
        normalize_phone("whatsapp:")
    with pytest.raises(InvalidArgument):
        normalize_phone(None)


def test_normalize_phone_rejects_too_long():
    with pytest.raises(InvalidArgument):
        normalize_phone("+1234567890123456")


def test_channel_address_round_trips_through_normalize():
    address = to_channel_address("15550100001")
    assert address == "whatsapp:+15550100001"
    assert normalize_phone(address) == "15550100001"


def test_external_sender_id_and_mask():
    assert external_sender_id("15550100001") == "whatsapp:15550100001"
    assert mask_phone("15550100001") == "***0001"
