import asyncio

from authserver.service.runtime import get_runtime
from scripts import bootstrap_client as script


def test_requires_name(monkeypatch, capsys):
    monkeypatch.delenv("CLIENT_NAME", raising=False)
    assert script.main([]) == 1
    assert "--name" in capsys.readouterr().out


def test_creates_client_and_prints_secret(monkeypatch, capsys):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    assert script.main(["--name", "cli-app"]) == 0

    out = capsys.readouterr().out
    client = get_runtime().store.get_client_by_name("cli-app")
    assert client is not None
    assert client.id in out
    assert "Client Secret:" in out
    assert client.public_key.strip() in out


def test_existing_client_is_reported():
    first = asyncio.run(script.bootstrap_client("cli-app"))
    second = asyncio.run(script.bootstrap_client("cli-app"))
    assert first["status"] == "created"
    assert second == {"client_id": first["client_id"], "name": "cli-app", "status": "exists"}


def test_dry_run_makes_no_changes():
    result = asyncio.run(script.bootstrap_client("dry-app", dry_run=True))
    assert result["status"] == "dry_run"
    assert get_runtime().store.get_client_by_name("dry-app") is None
