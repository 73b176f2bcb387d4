import http.client
import urllib.error
from email.message import Message
from pathlib import Path

import pytest

from runbox import net
from runbox.errors import FetchFailure


class FakeResponse:
    def __init__(self, body: bytes, status: int = 200) -> None:
        self.body = body
        self.status = status
        self.headers = Message()
        self.headers["Content-Type"] = "text/x-python; charset=utf-8"

    def read(self) -> bytes:
        return self.body

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None


def test_reads_local_paths_and_file_urls(tmp_path: Path) -> None:
    template = tmp_path / "bootstrap.py"
    template.write_text("print('template')\n", encoding="utf-8")

    assert net.fetch_text(str(template)) == "print('template')\n"
    assert net.fetch_text(template.as_uri()) == "print('template')\n"


def test_missing_local_file_is_a_fetch_failure(tmp_path: Path) -> None:
    with pytest.raises(FetchFailure) as excinfo:
        net.fetch_text(str(tmp_path / "absent.py"))
    assert excinfo.value.url.endswith("absent.py")


def test_http_success_decodes_body(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: dict[str, object] = {}

    def fake_urlopen(request, timeout):
        seen["agent"] = request.get_header("User-agent")
        seen["timeout"] = timeout
        return FakeResponse("VALUE = 'é'\n".encode("utf-8"))

    monkeypatch.setattr(net.urllib.request, "urlopen", fake_urlopen)

    assert net.fetch_text("https://cdn.jsdelivr.net/x.py", 1.5) == "VALUE = 'é'\n"
    assert seen == {"agent": net.USER_AGENT, "timeout": 1.5}


def test_http_error_is_a_fetch_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(request, timeout):
        raise urllib.error.HTTPError(request.full_url, 404, "Not Found", Message(), None)

    monkeypatch.setattr(net.urllib.request, "urlopen", fake_urlopen)

    with pytest.raises(FetchFailure, match="HTTP 404: Not Found"):
        net.fetch_text("https://cdn.jsdelivr.net/missing.py")


def test_timeout_is_a_fetch_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(request, timeout):
        raise TimeoutError("timed out")

    monkeypatch.setattr(net.urllib.request, "urlopen", fake_urlopen)

    with pytest.raises(FetchFailure, match="Request timeout after 0.1s"):
        net.fetch_text("https://cdn.jsdelivr.net/slow.py", 0.1)


def test_truncated_body_is_a_fetch_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    class TruncatedResponse(FakeResponse):
        def read(self) -> bytes:
            raise http.client.IncompleteRead(b"par", 10)

    monkeypatch.setattr(net.urllib.request, "urlopen", lambda request, timeout: TruncatedResponse(b""))

    with pytest.raises(FetchFailure, match="IncompleteRead"):
        net.fetch_text("https://cdn.jsdelivr.net/cut.py")
