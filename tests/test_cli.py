# tests/test_cli.py
"""Tests for the rap command line tool."""

import sys

import pytest

from rap import cli
from rap.keys import KeyManager

from conftest import REMOTE_ACTOR, FakeTransport, actor_document


def run(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["rap", *argv])
    cli.main()


class TestKeygen:
    """Test the keygen command."""

    def test_writes_key(self, monkeypatch, temp_dir, capsys):
        path = temp_dir / "main-key.pem"
        run(monkeypatch, "keygen", str(path))

        out = capsys.readouterr().out
        keys = KeyManager.load(path, "k")
        assert keys.public_key_pem in out

    def test_refuses_to_overwrite(self, monkeypatch, temp_dir):
        path = temp_dir / "main-key.pem"
        path.write_text("existing")
        with pytest.raises(SystemExit) as exc_info:
            run(monkeypatch, "keygen", str(path))
        assert exc_info.value.code == 1
        assert path.read_text() == "existing"

    def test_force(self, monkeypatch, temp_dir):
        path = temp_dir / "main-key.pem"
        path.write_text("existing")
        run(monkeypatch, "keygen", str(path), "--force")
        KeyManager.load(path, "k")


class TestActor:
    """Test the actor command."""

    @pytest.fixture
    def network(self, monkeypatch, remote_keys):
        network = FakeTransport()
        network.documents[REMOTE_ACTOR] = actor_document(
            REMOTE_ACTOR, remote_keys.public_key_pem, shared_inbox="https://remote.example/inbox"
        )
        monkeypatch.setattr(cli, "HttpTransport", lambda timeout, keys: network)
        return network

    def test_shows_actor(self, monkeypatch, network, capsys):
        run(monkeypatch, "actor", REMOTE_ACTOR)
        out = capsys.readouterr().out
        assert f"Inbox:        {REMOTE_ACTOR}/inbox" in out
        assert "Shared inbox: https://remote.example/inbox" in out
        assert "BEGIN PUBLIC KEY" in out

    def test_raw(self, monkeypatch, network, capsys):
        run(monkeypatch, "actor", REMOTE_ACTOR, "--raw")
        assert '"type": "Person"' in capsys.readouterr().out

    def test_unknown_actor(self, monkeypatch, network, capsys):
        with pytest.raises(SystemExit) as exc_info:
            run(monkeypatch, "actor", "https://remote.example/users/nobody")
        assert exc_info.value.code == 1
        assert "permanent" in capsys.readouterr().err
