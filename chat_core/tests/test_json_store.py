import json

import pytest

from chat_core.domain.conversation import Conversation
from chat_core.domain.exceptions import StoreError
from chat_core.domain.models import Message
from chat_core.infrastructure.storage.json_store import (
    CREDENTIAL_KEY,
    DIRECTIVE_KEY,
    MESSAGES_KEY,
    JsonKeyValueStore,
    LocalConversationStore,
)


def test_kv_store_update_and_get(tmp_path):
    kv = JsonKeyValueStore(root=tmp_path / ".storage")
    assert kv.get("missing") is None
    kv.update({"a": "1"})
    assert kv.get("a") == "1"
    assert JsonKeyValueStore(root=tmp_path / ".storage").get("a") == "1"
    kv.update({"b": "2", "a": "3"})
    assert (kv.get("a"), kv.get("b")) == ("3", "2")


def test_kv_store_treats_corrupt_file_as_empty(tmp_path):
    kv = JsonKeyValueStore(root=tmp_path)
    kv.path.write_text("{not json", encoding="utf-8")
    assert kv.get("a") is None
    kv.update({"a": "1"})
    assert json.loads(kv.path.read_text(encoding="utf-8")) == {"a": "1"}


def test_kv_store_write_failure_raises_store_error(tmp_path):
    kv = JsonKeyValueStore(root=tmp_path)
    kv.path.mkdir()
    with pytest.raises(StoreError) as exc:
        kv.update({"a": "1"})
    assert exc.value.code == "STORE_WRITE_ERROR"


def test_conversation_store_writes_two_keys(tmp_path):
    kv = JsonKeyValueStore(root=tmp_path)
    store = LocalConversationStore(kv)
    store.save(Conversation(messages=[Message("user", "Q"), Message("assistant", "A")], system_directive="be concise"))

    assert json.loads(kv.get(MESSAGES_KEY)) == [
        {"role": "user", "content": "Q"},
        {"role": "assistant", "content": "A"},
    ]
    assert kv.get(DIRECTIVE_KEY) == "be concise"


def test_conversation_store_missing_data_is_empty(tmp_path):
    store = LocalConversationStore(JsonKeyValueStore(root=tmp_path))
    conv = store.load()
    assert conv.messages == []
    assert conv.system_directive == ""


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        '{"role": "user"}',
        '[{"role": "robot", "content": "x"}]',
        '[{"role": "user", "content": 3}]',
        "[1, 2]",
    ],
)
def test_conversation_store_malformed_data_falls_back_to_empty(tmp_path, raw):
    kv = JsonKeyValueStore(root=tmp_path)
    kv.update({MESSAGES_KEY: raw})
    kv.update({DIRECTIVE_KEY: "be concise"})
    conv = LocalConversationStore(kv).load()
    assert conv.messages == []
    assert conv.system_directive == ""


def test_directive_only_restored_with_message_list(tmp_path):
    kv = JsonKeyValueStore(root=tmp_path)
    kv.update({DIRECTIVE_KEY: "orphan"})
    assert LocalConversationStore(kv).load().system_directive == ""


def test_credential_lookup(tmp_path):
    kv = JsonKeyValueStore(root=tmp_path)
    store = LocalConversationStore(kv)
    assert store.credential() is None
    kv.update({CREDENTIAL_KEY: "hunter2"})
    assert store.credential() == "hunter2"


def test_conversation_store_saves_both_keys_in_one_write(tmp_path, monkeypatch):
    kv = JsonKeyValueStore(root=tmp_path)
    writes = []
    original = kv._write

    def recording_write(data):
        writes.append(dict(data))
        original(data)

    monkeypatch.setattr(kv, "_write", recording_write)
    LocalConversationStore(kv).save(Conversation(messages=[Message("user", "Q")], system_directive="be concise"))

    assert len(writes) == 1
    assert set(writes[0]) == {MESSAGES_KEY, DIRECTIVE_KEY}
