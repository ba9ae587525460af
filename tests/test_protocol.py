import json

import pytest

from casambi_cloud_bridge.errors import FrameDecodeError
from casambi_cloud_bridge.protocol import (
    close_wire_frame,
    control_unit_frame,
    decode_frame,
    encode_frame,
    new_ref,
    open_wire_frame,
)


def test_decode_unit_changed_push() -> None:
    message = decode_frame(
        json.dumps(
            {
                "method": "unitChanged",
                "wire": "2",
                "id": 14,
                "controls": [{"type": "Dimmer", "value": 0.5}, "junk"],
            }
        ).encode("utf-8")
    )

    assert message.method == "unitChanged"
    assert message.kind == "unitChanged"
    assert message.wire == 2
    assert message.unit_id == 14
    assert message.controls == [{"type": "Dimmer", "value": 0.5}]
    assert not message.is_wire_status


def test_decode_wire_status_reply() -> None:
    message = decode_frame('{"wireStatus": "openWireSucceed", "ref": "abc", "wire": 1}')

    assert message.is_wire_status
    assert message.kind == "wireStatus"
    assert message.wire_status == "openWireSucceed"
    assert message.ref == "abc"
    assert message.method is None


@pytest.mark.parametrize("data", ["{not json", "[1, 2]", '"text"', b"\xff\xfe", "null"])
def test_decode_rejects_non_objects(data) -> None:
    with pytest.raises(FrameDecodeError):
        decode_frame(data)


def test_unknown_fields_are_tolerated() -> None:
    message = decode_frame('{"method": "peerChanged", "wire": true, "extra": {"nested": 1}}')

    assert message.wire is None
    assert message.as_dict()["extra"] == {"nested": 1}
    assert decode_frame("{}").kind == "unknown"


def test_outbound_frames() -> None:
    assert open_wire_frame("net", "sess", "ref-1", 3) == {
        "method": "open",
        "id": "net",
        "session": "sess",
        "ref": "ref-1",
        "wire": 3,
        "type": 1,
    }
    assert control_unit_frame(3, 8, {"Dimmer": {"value": 1.0}}) == {
        "method": "controlUnit",
        "wire": 3,
        "id": 8,
        "targetControls": {"Dimmer": {"value": 1.0}},
    }
    assert close_wire_frame(3) == {"method": "close", "wire": 3}


def test_encode_is_compact_utf8() -> None:
    assert encode_frame({"method": "open", "name": "Küche"}) == '{"method":"open","name":"Küche"}'


def test_refs_are_unique() -> None:
    refs = {new_ref() for _ in range(100)}

    assert len(refs) == 100
