from chat_core.api import service
from chat_core.engine.conversation_engine import ConversationEngine
from chat_core.infrastructure.storage.json_store import CREDENTIAL_KEY, JsonKeyValueStore
from chat_core.transport.http_client import HttpTransportClient


def test_create_engine_wires_http_transport_with_stored_credential(tmp_path):
    JsonKeyValueStore(root=tmp_path).update({CREDENTIAL_KEY: "hunter2"})
    engine = service.create_engine(storage_root=str(tmp_path))
    assert isinstance(engine, ConversationEngine)
    transport = engine._transport
    assert isinstance(transport, HttpTransportClient)
    assert transport._credential() == "hunter2"


def test_get_default_engine_is_singleton(monkeypatch, tmp_path):
    class DummySettings:
        storage_root = str(tmp_path)
        endpoint_url = "http://test.local/api/generate"
        http_connect_timeout = 1.0
        site_password = None
        signature_secret = ""

    monkeypatch.setattr("chat_core.api.service.settings", DummySettings())
    monkeypatch.setattr("chat_core.api.service._engine", None)
    first = service.get_default_engine()
    assert service.get_default_engine() is first
    assert first.messages == ()
