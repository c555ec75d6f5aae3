"""Tests for desired-state parsing, diffing and the built-in sources."""

from __future__ import annotations

import asyncio
import os
from dataclasses import replace
from types import SimpleNamespace

import pytest
import yaml

from acmerecon.core.types import ChangeType, RequestPhase
from acmerecon.models import CertificateRequest, RequestStatus
from acmerecon.source import (
    DesiredStateSource,
    FileDesiredStateSource,
    MemoryDesiredStateSource,
    diff_requests,
    load_source,
    request_from_dict,
)


def _req(name="web", domains=("example.com",), **kwargs):
    return CertificateRequest(
        name=name,
        domains=frozenset(domains),
        issuer=kwargs.pop("issuer", "le"),
        secret_name=kwargs.pop("secret_name", f"{name}-tls"),
        **kwargs,
    )


def _as_dict(name="web", domains=("example.com",), **extra):
    return {
        "name": name,
        "domains": list(domains),
        "issuer": "le",
        "secret_name": f"{name}-tls",
        **extra,
    }


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestRequestFromDict:
    def test_valid(self):
        req = request_from_dict(_as_dict(domains=["Example.COM.", "www.example.com"], renew_before_days=20))
        assert req.domains == frozenset({"example.com", "www.example.com"})
        assert req.renew_before_days == 20

    def test_missing_field(self):
        data = _as_dict()
        del data["secret_name"]
        with pytest.raises(ValueError, match="secret_name"):
            request_from_dict(data)

    def test_empty_domains(self):
        with pytest.raises(ValueError, match="Invalid certificate request 'web'"):
            request_from_dict(_as_dict(domains=[]))

    def test_unknown_field(self):
        with pytest.raises(ValueError, match="Additional properties"):
            request_from_dict(_as_dict(color="blue"))


class TestDiff:
    def test_events(self):
        old = {"a": _req("a"), "b": _req("b"), "c": _req("c")}
        new = {"b": _req("b", domains=("other.example.com",)), "c": _req("c"), "d": _req("d")}

        events = [(e.type, e.request.name) for e in diff_requests(old, new)]

        assert events == [
            (ChangeType.DELETED, "a"),
            (ChangeType.MODIFIED, "b"),
            (ChangeType.ADDED, "d"),
        ]

    def test_status_is_not_a_change(self):
        a = _req("a")
        b = replace(a, status=RequestStatus(phase=RequestPhase.READY))
        assert diff_requests({"a": a}, {"a": b}) == []


# ---------------------------------------------------------------------------
# Memory source
# ---------------------------------------------------------------------------


class TestMemorySource:
    def test_capability(self):
        assert isinstance(MemoryDesiredStateSource(), DesiredStateSource)

    async def test_list_sorted(self):
        source = MemoryDesiredStateSource([_req("b"), _req("a")])
        assert [r.name for r in await source.list()] == ["a", "b"]

    async def test_events_flow_to_watch(self):
        source = MemoryDesiredStateSource()
        source.apply(_req("a"))
        source.apply(_req("a"))  # unchanged: no event
        source.apply(_req("a", domains=("x.example.com",)))
        source.delete("a")
        source.delete("missing")

        stream = source.watch()
        events = [await asyncio.wait_for(anext(stream), 1) for _ in range(3)]

        assert [e.type for e in events] == [ChangeType.ADDED, ChangeType.MODIFIED, ChangeType.DELETED]
        assert await source.list() == []


# ---------------------------------------------------------------------------
# File source
# ---------------------------------------------------------------------------


def _write(path, data, *, bump=0):
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    if bump:
        st = path.stat()
        os.utime(path, (st.st_atime, st.st_mtime + bump))


class TestFileSource:
    async def test_missing_file_is_empty(self, tmp_path):
        assert await FileDesiredStateSource(tmp_path / "absent.yaml").list() == []

    async def test_list_forms(self, tmp_path):
        path = tmp_path / "requests.yaml"
        _write(path, [_as_dict("a")])
        assert [r.name for r in await FileDesiredStateSource(path).list()] == ["a"]

        _write(path, {"requests": [_as_dict("b")]})
        assert [r.name for r in await FileDesiredStateSource(path).list()] == ["b"]

    async def test_watch_emits_diff(self, tmp_path):
        path = tmp_path / "requests.yaml"
        _write(path, [_as_dict("a")])
        sleeps = []

        async def sleep(seconds):
            sleeps.append(seconds)
            if len(sleeps) == 1:
                _write(path, [_as_dict("a", domains=("new.example.com",)), _as_dict("b")], bump=5)
            await asyncio.sleep(0)

        source = FileDesiredStateSource(path, poll_seconds=7, sleep=sleep)
        stream = source.watch()
        events = [await asyncio.wait_for(anext(stream), 1) for _ in range(3)]

        assert [(e.type, e.request.name) for e in events] == [
            (ChangeType.ADDED, "a"),
            (ChangeType.MODIFIED, "a"),
            (ChangeType.ADDED, "b"),
        ]
        assert sleeps[0] == 7

    async def test_invalid_file_keeps_snapshot(self, tmp_path, caplog):
        path = tmp_path / "requests.yaml"
        _write(path, [_as_dict("a")])
        source = FileDesiredStateSource(path)
        assert len(await source.list()) == 1

        _write(path, [_as_dict("a"), {"name": "broken"}], bump=5)
        assert [r.name for r in await source.list()] == ["a"]
        assert "Ignoring invalid desired-state file" in caplog.text

    async def test_duplicate_names_rejected(self, tmp_path, caplog):
        path = tmp_path / "requests.yaml"
        _write(path, [_as_dict("a"), _as_dict("a")])
        assert await FileDesiredStateSource(path).list() == []
        assert "duplicate request name 'a'" in caplog.text


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


class TestLoadSource:
    async def test_memory_seeded_from_config(self):
        source = load_source(
            SimpleNamespace(backend="memory", path=None, poll_seconds=15, requests=(_as_dict("a"),)),
        )
        assert isinstance(source, MemoryDesiredStateSource)
        assert [r.name for r in await source.list()] == ["a"]

    def test_file(self, tmp_path):
        source = load_source(
            SimpleNamespace(backend="file", path=str(tmp_path / "r.yaml"), poll_seconds=3, requests=()),
        )
        assert isinstance(source, FileDesiredStateSource)

    def test_file_needs_path(self):
        with pytest.raises(ValueError, match="source.path"):
            load_source(SimpleNamespace(backend="file", path=None, poll_seconds=3, requests=()))

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown desired-state backend"):
            load_source(SimpleNamespace(backend="etcd", path=None, poll_seconds=3, requests=()))
