import struct

import pytest

from irestore.fls import FlsElement, FlsError, FlsFile

PREFIX = bytes(range(0x10))
BODY = b"BODY"
OLD_SIG = b"OLDSIG"


def _element(elem_type, payload, words):
    size = 12 + 4 * len(words) + len(payload)
    return struct.pack(f"<{3 + len(words)}I", elem_type, size, 0, *words) + payload


def _signed_payload():
    length = 0x18 + len(BODY) + len(OLD_SIG)
    return PREFIX + struct.pack("<II", length, 0x18 + len(BODY)) + BODY + OLD_SIG


def _blob():
    plain = _element(0x04, b"xyz!", [])
    signed_payload = _signed_payload()
    signed = _element(0x0C, signed_payload, [0, 0, 0, 0, len(signed_payload), 0, 0xAB])
    ten_payload = b"tenpayload"
    ten = _element(0x10, ten_payload, [len(ten_payload), 0, 0xCD])
    return plain + signed + ten


def _assert_offsets_consistent(fls):
    data = fls.data
    for element in fls.elements:
        if element.type in (0x0C, 0x10, 0x14):
            assert data[element.offset : element.offset + len(element.payload)] == element.payload


def test_parse_round_trip():
    blob = _blob()
    fls = FlsFile.parse(blob)
    assert fls.data == blob
    assert fls.size == len(blob)
    assert [e.type for e in fls.elements] == [0x04, 0x0C, 0x10]


def test_c_element_and_fields():
    fls = FlsFile.parse(_blob())
    signed = fls.c_element
    assert signed.payload == _signed_payload()
    assert signed.data_size == len(_signed_payload())
    assert signed.header_size == 40
    assert fls.elements[2].payload == b"tenpayload"


def test_plain_element_has_no_offset():
    fls = FlsFile.parse(_blob())
    plain = fls.elements[0]
    assert plain.payload == b"xyz!"
    assert hasattr(plain, "offset") is False


def test_update_sig_blob_replaces_signature():
    new_sig = b"NEWSIGNATURE"
    fls = FlsFile.parse(_blob())
    fls.update_sig_blob(new_sig)
    signed = fls.c_element
    assert signed.payload.endswith(new_sig)
    assert signed.payload[:0x10] == PREFIX
    assert OLD_SIG not in signed.payload
    assert signed.data_size == len(signed.payload)
    assert struct.unpack_from("<I", signed.payload, 0x10)[0] == signed.data_size
    assert signed.size == signed.header_size + len(signed.payload)
    assert fls.elements[2].payload == b"tenpayload"
    _assert_offsets_consistent(fls)


def test_update_sig_blob_output_reparses():
    fls = FlsFile.parse(_blob())
    fls.update_sig_blob(b"S" * 20)
    again = FlsFile.parse(fls.data)
    assert [e.payload for e in again.elements] == [e.payload for e in fls.elements]
    assert again.data == fls.data


def test_insert_ticket_prepends_padded_ticket():
    ticket = b"TICKET!"
    fls = FlsFile.parse(_blob())
    old_payload = fls.c_element.payload
    old_data_size = fls.c_element.data_size
    fls.insert_ticket(ticket)
    signed = fls.c_element
    assert signed.payload.startswith(ticket + b"\xff")
    assert signed.payload.endswith(old_payload)
    grown = len(signed.payload) - len(old_payload)
    assert grown % 4 == 0
    assert grown >= len(ticket)
    assert signed.data_size - old_data_size == grown
    assert set(signed.payload[len(ticket) : grown]) == {0xFF}
    _assert_offsets_consistent(fls)
    assert FlsFile.parse(fls.data).data == fls.data


def test_insert_aligned_ticket_has_no_padding():
    fls = FlsFile.parse(_blob())
    old_payload = fls.c_element.payload
    fls.insert_ticket(b"ABCDEFGH")
    assert fls.c_element.payload == b"ABCDEFGH" + old_payload


def test_parse_empty_raises():
    with pytest.raises(FlsError):
        FlsFile.parse(b"")


def test_parse_truncated_element_raises():
    blob = _blob()
    with pytest.raises(FlsError):
        FlsFile.parse(blob[:-3])


def test_parse_element_smaller_than_header_raises():
    with pytest.raises(FlsError):
        FlsFile.parse(struct.pack("<III", 0x0C, 12, 0))


def test_update_without_signed_element_raises():
    fls = FlsFile.parse(_element(0x04, b"abcd", []))
    with pytest.raises(FlsError):
        fls.update_sig_blob(b"sig")
    with pytest.raises(FlsError):
        fls.insert_ticket(b"ticket")


def test_empty_file_cannot_be_patched():
    with pytest.raises(FlsError):
        FlsFile().insert_ticket(b"ticket")


def test_update_data_size_mismatch_raises():
    payload = bytearray(_signed_payload())
    blob = _element(0x0C, bytes(payload), [0, 0, 0, 0, len(payload) + 1, 0, 0])
    fls = FlsFile.parse(blob)
    with pytest.raises(FlsError):
        fls.update_sig_blob(b"sig")


def test_update_signature_offset_too_large_raises():
    payload = bytearray(_signed_payload())
    struct.pack_into("<I", payload, 0x14, len(payload) + 4)
    blob = _element(0x0C, bytes(payload), [0, 0, 0, 0, len(payload), 0, 0])
    fls = FlsFile.parse(blob)
    with pytest.raises(FlsError):
        fls.update_sig_blob(b"sig")
    assert fls.data == blob


def test_element_to_bytes_matches_header_layout():
    element = FlsElement(0x10, 24 + 3, 0, [3, 0, 24], b"abc")
    raw = element.to_bytes()
    assert raw[24:] == b"abc"
    assert struct.unpack_from("<6I", raw) == (0x10, 27, 0, 3, 0, 24)