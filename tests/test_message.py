from __future__ import annotations

import pytest

from replwire import fields as f
from replwire.bencode import decode, encode
from replwire.errors import TypeMismatchError
from replwire.message import (
    Message,
    clone_request,
    describe_request,
    eval_request,
    interrupt_request,
    response_to,
    status_of,
)


def test_keyword_fields_use_wire_names_and_drop_none() -> None:
    message = Message(op="eval", root_ex="java.lang.Exception", ns=None)

    assert dict(message) == {"op": "eval", "root-ex": "java.lang.Exception"}
    assert message.root_ex == "java.lang.Exception"
    assert message.ns is None


def test_status_is_normalized_to_unique_tokens() -> None:
    message = Message(id="1", status=["done", b"error", "done"])

    assert message["status"] == ("done", "error")
    assert message.status == {"done", "error"}
    assert message.is_terminal
    assert message.is_error


def test_single_status_token_is_accepted() -> None:
    assert Message(status="done").status == {"done"}


def test_from_value_decodes_reserved_fields_and_keeps_extensions() -> None:
    raw = decode(b"d2:id1:72:ns4:user6:statusl4:donee5:extrali1eee")

    message = Message.from_value(raw)

    assert message.id == "7"
    assert message.ns == "user"
    assert message.status == {"done"}
    assert message["extra"] == [1]


def test_to_value_encodes_in_insertion_order() -> None:
    message = Message(id="9", session="s", status=("done",))

    assert encode(message.to_value()) == b"d2:id1:97:session1:s6:statusl4:doneee"


@pytest.mark.parametrize(
    "value",
    [
        [b"op", b"eval"],
        {b"id": 7},
        {b"status": b"done"},
        {b"status": [1]},
        {b"code": b"\xff\xfe"},
        {b"\xff": b"x"},
    ],
)
def test_bad_shapes_are_type_mismatches(value: object) -> None:
    with pytest.raises(TypeMismatchError):
        Message.from_value(value)


def test_with_fields_copies_and_can_remove() -> None:
    original = Message(op="eval", code="1", ns="user")

    updated = original.with_fields(id="3", ns=None)

    assert updated == {"op": "eval", "code": "1", "id": "3"}
    assert original.ns == "user"


def test_text_decodes_bytes_extensions() -> None:
    message = Message({"file": b"core.clj", "line": 12})

    assert message.text("file") == "core.clj"
    assert message.text("line") == "12"
    assert message.text("missing", "n/a") == "n/a"


def test_request_builders() -> None:
    assert clone_request() == {"op": f.CLONE}
    assert eval_request("(+ 1 2)", session="s1", ns="user") == {
        "op": "eval",
        "code": "(+ 1 2)",
        "session": "s1",
        "ns": "user",
    }
    assert interrupt_request("s1", "42") == {"op": "interrupt", "session": "s1", "interrupt-id": "42"}
    assert describe_request(verbose=True)[f.VERBOSE] == 1
    assert f.VERBOSE not in describe_request()


def test_response_to_echoes_id_and_session() -> None:
    request = Message(op="eval", id="5", session="abc", code="x")

    response = response_to(request, f.DONE, value="1")

    assert response == {"id": "5", "session": "abc", "value": "1", "status": ("done",)}
    assert response_to(Message(op="describe", id="6")) == {"id": "6"}


def test_status_of_unions_tokens() -> None:
    messages = [Message(id="1", out="x"), Message(id="1", status=["eval-error"]), Message(id="1", status=["done"])]

    assert status_of(messages) == {"eval-error", "done"}
