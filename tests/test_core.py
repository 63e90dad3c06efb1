"""
Tests for configuration, events, storage and the command line.
"""

import json
import os
from unittest.mock import AsyncMock, patch

import pytest

from localcan.config import Settings
from localcan.events import DOMAINS_CHANGED, ChangeEvent, EventBus
from localcan.platform import run_command
from localcan.storage.store import StateStore


class TestConfig:
    """Test configuration loading."""

    def test_settings_loads(self):
        settings = Settings()
        assert settings.debug is True
        assert settings.proxy_port == 80
        assert settings.service_name == "LocalCanProxy"
        assert settings.ca_name == "LocalCan Root CA"
        assert settings.publish_detected is False

    def test_settings_env_prefix(self):
        os.environ["LOCALCAN_PROXY_TLS_PORT"] = "8443"
        try:
            assert Settings().proxy_tls_port == 8443
        finally:
            del os.environ["LOCALCAN_PROXY_TLS_PORT"]

    def test_ensure_dirs(self, tmp_path):
        settings = Settings(data_dir=str(tmp_path / "data"))
        settings.ensure_dirs()
        for sub in ("ca", "certs", "scripts"):
            assert (tmp_path / "data" / sub).is_dir()


class TestEventBus:
    @pytest.mark.asyncio
    async def test_delivery_order(self):
        bus = EventBus()
        seen = []

        async def first(event):
            seen.append(("first", event.subject))

        async def second(event):
            seen.append(("second", event.subject))

        bus.subscribe(DOMAINS_CHANGED, first)
        bus.subscribe(DOMAINS_CHANGED, second)
        await bus.publish(ChangeEvent(DOMAINS_CHANGED, "a.local"))
        assert seen == [("first", "a.local"), ("second", "a.local")]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_stop_delivery(self):
        bus = EventBus()
        seen = []

        async def broken(event):
            raise RuntimeError("boom")

        async def working(event):
            seen.append(event.kind)

        bus.subscribe(DOMAINS_CHANGED, broken)
        bus.subscribe(DOMAINS_CHANGED, working)
        await bus.publish(ChangeEvent(DOMAINS_CHANGED))
        assert seen == [DOMAINS_CHANGED]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        seen = []

        async def listener(event):
            seen.append(event)

        bus.subscribe(DOMAINS_CHANGED, listener)
        bus.unsubscribe(DOMAINS_CHANGED, listener)
        await bus.publish(ChangeEvent(DOMAINS_CHANGED))
        assert seen == []


class TestStateStore:
    @pytest.mark.asyncio
    async def test_put_get_delete(self, state_store):
        await state_store.put("domains", "b", {"id": "b"})
        await state_store.put("domains", "a", {"id": "a"})
        assert await state_store.get("domains", "a") == {"id": "a"}
        assert [r["id"] for r in await state_store.list("domains")] == ["a", "b"]
        assert await state_store.delete("domains", "a") is True
        assert await state_store.delete("domains", "a") is False
        assert await state_store.get("domains", "a") is None

    @pytest.mark.asyncio
    async def test_survives_restart(self, tmp_path):
        first = StateStore(data_dir=str(tmp_path))
        await first.put("certificates", "a.local", {"domain": "a.local"})

        second = StateStore(data_dir=str(tmp_path))
        assert await second.list("certificates") == [{"domain": "a.local"}]
        with open(tmp_path / "state.json") as f:
            assert "a.local" in json.load(f)["certificates"]

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self, state_store):
        await state_store.put("domains", "a", {"id": "a"})
        record = await state_store.get("domains", "a")
        record["id"] = "changed"
        assert (await state_store.get("domains", "a"))["id"] == "a"

    @pytest.mark.asyncio
    async def test_falls_back_when_redis_unavailable(self, tmp_path):
        store = StateStore(data_dir=str(tmp_path), redis_url="redis://127.0.0.1:1/0")
        await store.put("domains", "a", {"id": "a"})
        assert await store.get("domains", "a") == {"id": "a"}
        assert (tmp_path / "state.json").exists()
        await store.close()

    @pytest.mark.asyncio
    async def test_failed_write_rolls_back(self, state_store):
        await state_store.put("domains", "a", {"id": "a"})
        with patch.object(state_store, "_flush_file", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                await state_store.put("domains", "b", {"id": "b"})
        assert await state_store.get("domains", "b") is None


class TestRunCommand:
    @pytest.mark.asyncio
    async def test_missing_binary(self):
        with pytest.raises(FileNotFoundError):
            await run_command(["localcan-no-such-binary"])


class TestCLI:
    def test_scan_pushes_file(self, tmp_path, capsys):
        from localcan.__main__ import main

        scan = tmp_path / "scan.json"
        scan.write_text(json.dumps([{"pid": 1, "name": "vite", "framework": "Vite", "port": 5173}]))

        push = AsyncMock(return_value={"count": 1, "changed": True})
        with patch("localcan.__main__.push_scan", push):
            assert main(["scan", str(scan), "--url", "http://127.0.0.1:9999"]) == 0

        url, processes = push.call_args.args
        assert url == "http://127.0.0.1:9999"
        assert processes[0]["framework"] == "Vite"
        assert "Reported 1 processes" in capsys.readouterr().out

    def test_command_required(self):
        from localcan.__main__ import main

        with pytest.raises(SystemExit):
            main([])
