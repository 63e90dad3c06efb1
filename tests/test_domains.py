"""
Tests for the domain registry.
"""

import asyncio
import os
import threading

import pytest

from localcan.domains.hosts import BLOCK_BEGIN, BLOCK_END, HostsFileEditor
from localcan.domains.models import (
    AUTO_DETECTED,
    CUSTOM,
    CustomDomain,
    framework_key,
    suggest_domain,
    validate_domain,
    validate_target,
)
from localcan.domains.registry import DomainRegistry, process_domains, project_entries
from localcan.errors import ConflictError, NotFoundError, ValidationError
from localcan.events import DOMAINS_CHANGED
from localcan.storage.store import StateStore

from conftest import make_process


# ── Validation tests ────────────────────────────────────────────────


class TestValidation:
    def test_domain_normalized(self):
        assert validate_domain("  MyApp.Local ") == "myapp.local"

    def test_domain_without_tld_rejected(self):
        with pytest.raises(ValidationError):
            validate_domain("myapp")

    def test_domain_with_bad_chars_rejected(self):
        with pytest.raises(ValidationError):
            validate_domain("my_app!.local")

    def test_empty_domain_rejected(self):
        with pytest.raises(ValidationError):
            validate_domain("")

    def test_target_requires_scheme(self):
        with pytest.raises(ValidationError):
            validate_target("localhost:3000")

    def test_target_rejects_other_schemes(self):
        with pytest.raises(ValidationError):
            validate_target("ftp://localhost:21")

    def test_target_accepted(self):
        assert validate_target("http://localhost:3000/") == "http://localhost:3000"
        assert validate_target("https://127.0.0.1:8443") == "https://127.0.0.1:8443"

    def test_suggest_domain(self):
        assert suggest_domain("http://localhost:3000") == "app-3000.local"

    def test_framework_key(self):
        assert framework_key("Next.js") == "nextjs"
        assert framework_key("Vue CLI") == "vuecli"


class TestCustomDomainModel:
    def test_creation_defaults(self):
        domain = CustomDomain(domain="myapp.local", target="http://localhost:3000")
        assert domain.ssl is False
        assert domain.enabled is False
        assert len(domain.id) == 12

    def test_serialization_roundtrip(self):
        domain = CustomDomain(domain="api.local", target="http://localhost:8000", ssl=True, enabled=True)
        restored = CustomDomain.from_dict(domain.to_dict())
        assert restored == domain


# ── Process domain derivation ───────────────────────────────────────


class TestProcessDomains:
    def test_framework_domain(self):
        result = process_domains([make_process("Next.js", 3000)])
        assert [d for d, _ in result] == ["nextjs.local"]

    def test_same_framework_suffixed_by_port(self):
        result = process_domains([
            make_process("Next.js", 3001, pid=2),
            make_process("Next.js", 3000, pid=1),
        ])
        assert [d for d, _ in result] == ["nextjs.local", "nextjs-3001.local"]

    def test_reserved_names_skipped(self):
        result = process_domains([make_process("Vite", 5173)], reserved={"vite.local"})
        assert [d for d, _ in result] == ["vite-5173.local"]

    def test_names_unique_for_same_port(self):
        result = process_domains([
            make_process("Vite", 5173, pid=1),
            make_process("Vite", 5173, pid=2),
        ])
        domains = [d for d, _ in result]
        assert len(set(domains)) == 2


class TestProjection:
    def test_auto_detected_unpublished_by_default(self):
        entries = project_entries([make_process("Next.js", 3000)], [], set())
        entry = entries[0]
        assert entry.source_kind == AUTO_DETECTED
        assert entry.local_target == "http://localhost:3000"
        assert entry.published is False
        assert entry.protocol == "http"

    def test_auto_detected_published_when_enabled(self):
        entries = project_entries(
            [make_process("Next.js", 3000), make_process("Vite", 5173, status="stopped")],
            [], set(), publish_detected=True,
        )
        published = {e.domain: e.published for e in entries}
        assert published == {"nextjs.local": True, "vite.local": False}

    def test_custom_https_only_with_valid_cert(self):
        custom = CustomDomain(domain="myapp.local", target="http://localhost:3000", ssl=True, enabled=True)
        without = project_entries([], [custom], set())[0]
        with_cert = project_entries([], [custom], {"myapp.local"})[0]
        assert without.protocol == "http"
        assert without.ssl is True
        assert with_cert.protocol == "https"
        assert with_cert.has_certificate is True

    def test_http_without_tls_listener(self):
        custom = CustomDomain(domain="myapp.local", target="http://localhost:3000", ssl=True, enabled=True)
        entries = project_entries(
            [make_process("Vite", 5173)], [custom], {"myapp.local", "vite.local"}, tls_enabled=False,
        )
        assert [e.protocol for e in entries] == ["http", "http"]
        assert entries[1].has_certificate is True
        assert entries[1].ssl is True

    def test_custom_without_ssl_stays_http(self):
        custom = CustomDomain(domain="myapp.local", target="http://localhost:3000", enabled=True)
        entry = project_entries([], [custom], {"myapp.local"})[0]
        assert entry.protocol == "http"
        assert entry.has_certificate is True

    def test_entry_kinds(self):
        custom = CustomDomain(domain="myapp.local", target="http://localhost:3000")
        entries = project_entries([make_process()], [custom], set())
        assert [e.source_kind for e in entries] == [AUTO_DETECTED, CUSTOM]
        assert entries[1].to_api_response()["id"] == custom.id


# ── Hosts file tests ────────────────────────────────────────────────


class TestHostsFileEditor:
    def test_add_and_remove(self, tmp_path):
        path = tmp_path / "hosts"
        path.write_text("127.0.0.1\tlocalhost\n")
        editor = HostsFileEditor(str(path))

        editor.add_mapping("myapp.local")
        editor.add_mapping("myapp.local")
        text = path.read_text()
        assert text.startswith("127.0.0.1\tlocalhost\n")
        assert BLOCK_BEGIN in text and BLOCK_END in text
        assert editor.mappings() == ["myapp.local"]

        editor.remove_mapping("myapp.local")
        editor.remove_mapping("myapp.local")
        assert editor.mappings() == []
        assert path.read_text() == "127.0.0.1\tlocalhost\n"

    def test_lines_outside_block_kept(self, tmp_path):
        path = tmp_path / "hosts"
        path.write_text(f"10.0.0.1 db\n{BLOCK_BEGIN}\n127.0.0.1\told.local\n{BLOCK_END}\n10.0.0.2 cache\n")
        editor = HostsFileEditor(str(path))
        editor.add_mapping("new.local")
        lines = path.read_text().splitlines()
        assert lines[0] == "10.0.0.1 db"
        assert lines[-1] == "10.0.0.2 cache"
        assert editor.mappings() == ["old.local", "new.local"]

    @pytest.mark.skipif(hasattr(os, "geteuid") and os.geteuid() == 0, reason="root can write anything")
    def test_no_permission(self, tmp_path):
        path = tmp_path / "hosts"
        path.write_text("127.0.0.1\tlocalhost\n")
        path.chmod(0o444)
        try:
            assert HostsFileEditor(str(path)).has_permission() is False
        finally:
            path.chmod(0o644)


# ── DomainRegistry tests ────────────────────────────────────────────


class TestDomainRegistry:
    @pytest.mark.asyncio
    async def test_add_domain(self, registry, hosts_file, recorder):
        result = await registry.add_custom_domain("MyApp.local", "http://localhost:3000")
        assert result.domain.domain == "myapp.local"
        assert result.hosts_mapped is True
        assert result.warning is None
        assert hosts_file.mappings() == ["myapp.local"]
        assert recorder.kinds() == [DOMAINS_CHANGED]

    @pytest.mark.asyncio
    async def test_add_invalid_domain(self, registry, recorder):
        with pytest.raises(ValidationError):
            await registry.add_custom_domain("myapp", "http://localhost:3000")
        with pytest.raises(ValidationError):
            await registry.add_custom_domain("myapp.local", "localhost:3000")
        assert await registry.list_custom() == []
        assert recorder.events == []

    @pytest.mark.asyncio
    async def test_duplicate_custom_domain(self, registry):
        await registry.add_custom_domain("myapp.local", "http://localhost:3000")
        with pytest.raises(ConflictError):
            await registry.add_custom_domain("MYAPP.local", "http://localhost:4000")
        assert len(await registry.list_custom()) == 1

    @pytest.mark.asyncio
    async def test_conflict_with_process_domain(self, registry):
        await registry.update_processes([make_process("Next.js", 3000)])
        with pytest.raises(ConflictError):
            await registry.add_custom_domain("nextjs.local", "http://localhost:4000")

    @pytest.mark.asyncio
    async def test_custom_domain_reserves_name(self, registry):
        await registry.add_custom_domain("vite.local", "http://localhost:4000")
        await registry.update_processes([make_process("Vite", 5173)])
        domains = [e.domain for e in await registry.list_entries()]
        assert sorted(domains) == ["vite-5173.local", "vite.local"]

    @pytest.mark.asyncio
    async def test_add_without_hosts_permission(self, registry, hosts_file, monkeypatch):
        monkeypatch.setattr(hosts_file, "has_permission", lambda: False)
        result = await registry.add_custom_domain("myapp.local", "http://localhost:3000")
        assert result.hosts_mapped is False
        assert "Administrator" in result.warning
        assert len(await registry.list_custom()) == 1

    @pytest.mark.asyncio
    async def test_hosts_file_edited_off_the_event_loop(self, registry, hosts_file, monkeypatch):
        loop_thread = threading.get_ident()
        threads = []
        add_mapping = hosts_file.add_mapping
        remove_mapping = hosts_file.remove_mapping

        def recording_add(domain):
            threads.append(threading.get_ident())
            add_mapping(domain)

        def recording_remove(domain):
            threads.append(threading.get_ident())
            remove_mapping(domain)

        monkeypatch.setattr(hosts_file, "add_mapping", recording_add)
        monkeypatch.setattr(hosts_file, "remove_mapping", recording_remove)

        result = await registry.add_custom_domain("myapp.local", "http://localhost:3000")
        await registry.delete_domain(result.domain.id)
        assert len(threads) == 2
        assert loop_thread not in threads

    @pytest.mark.asyncio
    async def test_concurrent_adds_all_mapped(self, registry, hosts_file):
        names = [f"app{i}.local" for i in range(6)]
        await asyncio.gather(*[
            registry.add_custom_domain(name, f"http://localhost:{3000 + i}")
            for i, name in enumerate(names)
        ])
        assert sorted(hosts_file.mappings()) == sorted(names)

    @pytest.mark.asyncio
    async def test_add_then_delete_restores_listing(self, registry, hosts_file):
        await registry.update_processes([make_process()])
        before = await registry.list_entries()

        result = await registry.add_custom_domain("myapp.local", "http://localhost:3000")
        await registry.delete_domain(result.domain.id)

        assert await registry.list_entries() == before
        assert hosts_file.mappings() == []

    @pytest.mark.asyncio
    async def test_toggle_twice_is_identity(self, registry, recorder):
        result = await registry.add_custom_domain("myapp.local", "http://localhost:3000")
        domain_id = result.domain.id
        before = await registry.list_entries()

        toggled = await registry.toggle_domain(domain_id)
        assert toggled.enabled is True
        assert (await registry.list_entries())[0].published is True

        await registry.toggle_domain(domain_id)
        assert await registry.list_entries() == before
        assert recorder.kinds().count(DOMAINS_CHANGED) == 3

    @pytest.mark.asyncio
    async def test_toggle_ssl(self, registry):
        result = await registry.add_custom_domain("myapp.local", "http://localhost:3000")
        updated = await registry.toggle_ssl(result.domain.id)
        assert updated.ssl is True

    @pytest.mark.asyncio
    async def test_unknown_id(self, registry):
        with pytest.raises(NotFoundError):
            await registry.toggle_domain("missing")
        with pytest.raises(NotFoundError):
            await registry.toggle_ssl("missing")
        with pytest.raises(NotFoundError):
            await registry.delete_domain("missing")

    @pytest.mark.asyncio
    async def test_update_processes_emits_only_on_change(self, registry, recorder):
        assert await registry.update_processes([make_process()]) is True
        assert await registry.update_processes([make_process()]) is False
        assert await registry.update_processes([make_process(status="stopped")]) is True
        assert recorder.kinds() == [DOMAINS_CHANGED, DOMAINS_CHANGED]

    @pytest.mark.asyncio
    async def test_refresh_processes_from_observer(self, registry, observer):
        observer.push([make_process("Django", 8000)])
        assert await registry.refresh_processes() is True
        assert [p.framework for p in await registry.list_processes()] == ["Django"]

    @pytest.mark.asyncio
    async def test_categories(self, registry):
        await registry.update_processes([
            make_process("Next.js", 3000, pid=1),
            make_process("Next.js", 3001, pid=2, status="stopped"),
            make_process("Vite", 5173, pid=3),
        ])
        result = await registry.add_custom_domain("myapp.local", "http://localhost:4000")
        await registry.toggle_domain(result.domain.id)

        counts = await registry.categories()
        assert counts["all"] == 4
        assert counts["active"] == 3
        assert counts["nextjs"] == 2
        assert counts["vite"] == 1

    @pytest.mark.asyncio
    async def test_persistence(self, registry, state_store, events, hosts_file):
        result = await registry.add_custom_domain("myapp.local", "http://localhost:3000", ssl=True)
        await registry.toggle_domain(result.domain.id)

        reloaded = DomainRegistry(
            store=StateStore(data_dir=str(state_store.path.parent)),
            events=events,
            hosts=hosts_file,
        )
        assert await reloaded.load() == 1
        restored = await reloaded.get(result.domain.id)
        assert restored.domain == "myapp.local"
        assert restored.enabled is True
        assert restored.ssl is True

    @pytest.mark.asyncio
    async def test_concurrent_adds_keep_names_unique(self, registry):
        results = await asyncio.gather(
            *[registry.add_custom_domain("same.local", f"http://localhost:{3000 + i}") for i in range(5)],
            return_exceptions=True,
        )
        added = [r for r in results if not isinstance(r, Exception)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(added) == 1
        assert len(conflicts) == 4
