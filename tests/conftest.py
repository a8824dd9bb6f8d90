import hashlib
import json
from pathlib import Path

import pytest
import requests

from soarpy.config import Config
from soarpy.db_manager import DbManager
from soarpy.downloader import Downloader
from soarpy.operations import Operations

REPO_URLS = {
    "main": "https://repo.example/main.json",
    "extra": "https://repo.example/extra.json",
}


class FakeResponse:
    def __init__(self, status_code=200, body=b"", headers=None, reason="OK", chunk=4):
        self.status_code = status_code
        self.body = body
        self.headers = dict(headers or {})
        self.headers.setdefault("content-length", str(len(body)))
        self.reason = reason
        self.chunk = chunk
        self.closed = False

    @property
    def content(self):
        return self.body

    def iter_content(self, chunk_size=1):
        step = min(chunk_size, self.chunk)
        for i in range(0, len(self.body), step):
            yield self.body[i:i + step]

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class FakeSession:
    """Stands in for requests.Session: canned bodies per URL, optional Range support."""

    def __init__(self):
        self.routes = {}
        self.failures = {}
        self.calls = []

    def add(self, url, body, status=200, headers=None, ranges=True):
        self.routes[url] = (body, status, headers or {}, ranges)

    def add_json(self, url, doc):
        self.add(url, json.dumps(doc).encode())

    def fail(self, url, *outcomes):
        """Queue exceptions or FakeResponses returned before the route is served."""
        self.failures.setdefault(url, []).extend(outcomes)

    def get(self, url, headers=None, stream=False, timeout=None):
        headers = dict(headers or {})
        self.calls.append((url, headers))
        pending = self.failures.get(url)
        if pending:
            outcome = pending.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        if url not in self.routes:
            return FakeResponse(404, b"", reason="Not Found")
        body, status, extra, ranges = self.routes[url]
        rng = headers.get("Range")
        if rng and ranges and status == 200:
            start = int(rng.split("=", 1)[1].rstrip("-"))
            if start >= len(body):
                return FakeResponse(416, b"", reason="Range Not Satisfiable")
            return FakeResponse(206, body[start:], extra)
        return FakeResponse(status, body, extra)

    def urls(self):
        return [u for u, _ in self.calls]

    def close(self):
        pass


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def pkg_entry(pkg_id, name, version, url, payload=None, **extra):
    entry = {"pkg_id": pkg_id, "pkg_name": name, "version": version, "download_url": url}
    if payload is not None:
        entry["shasum"] = sha256(payload)
        entry["size"] = len(payload)
    entry.update(extra)
    return entry


def write_config(tmp_path: Path, extra: str = "") -> Path:
    root = tmp_path / "root"
    path = tmp_path / "soarpy.conf"
    path.write_text(
        f"""
[general]
root_path = {root}
parallel_limit = 2
sync_interval = 0

[network]
retries = 2
backoff_factor = 0.5
max_backoff = 4

[repository.main]
url = {REPO_URLS["main"]}

[repository.extra]
url = {REPO_URLS["extra"]}
{extra}
""",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def config(tmp_path):
    cfg = Config(write_config(tmp_path), create_default=False)
    cfg.setup_required_paths()
    return cfg


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def downloader(config, session, sleeps):
    return Downloader(config, session=session, sleep=sleeps.append)


@pytest.fixture
def db(config):
    return DbManager(config)


@pytest.fixture
def ops(config, downloader):
    with Operations(config, downloader=downloader) as operations:
        yield operations


@pytest.fixture
def publish(session):
    """publish("main", [entries...], payloads={url: bytes}); unpublished repos serve an empty list."""
    for url in REPO_URLS.values():
        session.add_json(url, [])

    def _publish(repo, entries, payloads=None):
        session.add_json(REPO_URLS[repo], entries)
        for url, data in (payloads or {}).items():
            session.add(url, data)

    return _publish


def hello_release(version, **extra):
    """(entry, {url: payload}) for hello.upstream at `version`."""
    payload = f"#!/bin/sh\necho hello {version}\n".encode()
    url = f"https://dl.example/hello-{version}"
    return pkg_entry("hello.upstream", "hello", version, url, payload, **extra), {url: payload}


@pytest.fixture
def hello(ops, publish):
    """A synced repository offering one package, hello.upstream 1.0."""
    entry, payloads = hello_release("1.0")
    publish("main", [entry], payloads)
    assert ops.sync().success
    return next(iter(payloads.values()))


def connection_error(msg="connection reset"):
    return requests.exceptions.ConnectionError(msg)
