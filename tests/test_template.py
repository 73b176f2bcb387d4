import ast
import asyncio
import logging

import pytest

from runbox.errors import FetchFailure, TemplateIntegrityError
from runbox.template import (
    FALLBACK_TEMPLATE,
    LIBRARY_BUNDLE_MARKER,
    POLICY_MARKER,
    REQUIRED_MARKERS,
    SECRET_MARKER,
    USER_CODE_MARKER,
    TemplateEngine,
    escape_user_code,
    substitute_markers,
)

MINIMAL_TEMPLATE = "\n".join(
    [
        f"# {SECRET_MARKER} {SECRET_MARKER}",
        f"# {POLICY_MARKER}",
        LIBRARY_BUNDLE_MARKER,
        f"CODE = '''{USER_CODE_MARKER}'''",
    ]
)


class CountingFetch:
    def __init__(self, text: str | None = None, error: Exception | None = None) -> None:
        self.text = text
        self.error = error
        self.calls: list[str] = []

    def __call__(self, url: str, timeout_s: float) -> str:
        self.calls.append(url)
        if self.error is not None:
            raise self.error
        assert self.text is not None
        return self.text


def _loaded_engine() -> TemplateEngine:
    engine = TemplateEngine()
    asyncio.run(engine.initialize())
    return engine


def _user_source(program: str) -> str:
    tree = ast.parse(program)
    for node in tree.body:
        if isinstance(node, ast.Assign) and getattr(node.targets[0], "id", None) == "USER_SOURCE":
            assert isinstance(node.value, ast.Constant)
            return node.value.value
    raise AssertionError("USER_SOURCE assignment not found")


def test_fallback_template_carries_every_marker() -> None:
    TemplateEngine().validate(FALLBACK_TEMPLATE)


def test_validate_names_every_missing_marker() -> None:
    with pytest.raises(TemplateIntegrityError) as excinfo:
        TemplateEngine().validate(f"only {SECRET_MARKER} here")

    assert set(excinfo.value.missing_markers) == {
        USER_CODE_MARKER,
        POLICY_MARKER,
        LIBRARY_BUNDLE_MARKER,
    }
    for marker in excinfo.value.missing_markers:
        assert marker in str(excinfo.value)


def test_initialize_without_source_uses_embedded_template() -> None:
    fetch = CountingFetch(text=MINIMAL_TEMPLATE)
    engine = TemplateEngine(fetch=fetch)
    asyncio.run(engine.initialize())

    assert engine.is_loaded is True
    assert engine.template == FALLBACK_TEMPLATE
    assert fetch.calls == []


def test_initialize_is_idempotent_until_force_reload() -> None:
    fetch = CountingFetch(text=MINIMAL_TEMPLATE)
    engine = TemplateEngine("https://templates.example/bootstrap.py", fetch=fetch)

    asyncio.run(engine.initialize())
    asyncio.run(engine.initialize())
    assert len(fetch.calls) == 1
    assert engine.template == MINIMAL_TEMPLATE
    assert engine.using_fallback is False

    engine.force_reload()
    asyncio.run(engine.initialize())
    assert len(fetch.calls) == 2


def test_fetch_failure_falls_back(caplog: pytest.LogCaptureFixture) -> None:
    fetch = CountingFetch(error=FetchFailure("https://templates.example/x.py", "HTTP 404"))
    engine = TemplateEngine("https://templates.example/x.py", fetch=fetch)

    with caplog.at_level(logging.WARNING, logger="runbox.template"):
        asyncio.run(engine.initialize())

    assert engine.using_fallback is True
    assert engine.template == FALLBACK_TEMPLATE
    assert "Using fallback template" in caplog.text


def test_template_missing_markers_falls_back() -> None:
    fetch = CountingFetch(text="print('no markers at all')")
    engine = TemplateEngine("https://templates.example/bad.py", fetch=fetch)
    asyncio.run(engine.initialize())

    assert engine.using_fallback is True


def test_slow_template_load_is_bounded() -> None:
    import time

    def slow_fetch(url: str, timeout_s: float) -> str:
        time.sleep(0.5)
        return MINIMAL_TEMPLATE

    engine = TemplateEngine("https://templates.example/slow.py", load_timeout_s=0.05, fetch=slow_fetch)
    asyncio.run(engine.initialize())

    assert engine.using_fallback is True


def test_render_before_initialize_fails() -> None:
    with pytest.raises(RuntimeError, match="not initialized"):
        TemplateEngine().render("print(1)", "secret")


def test_render_replaces_every_occurrence() -> None:
    engine = TemplateEngine("https://templates.example/t.py", fetch=CountingFetch(text=MINIMAL_TEMPLATE))
    asyncio.run(engine.initialize())

    rendered = engine.render("x = 1", "abc123", "BUNDLE", "POLICY-TEXT")

    assert rendered.count("abc123") == 2
    assert "POLICY-TEXT" in rendered
    assert "BUNDLE" in rendered
    for marker in REQUIRED_MARKERS:
        assert marker not in rendered


def test_substituted_values_are_not_rescanned() -> None:
    rendered = substitute_markers(
        f"{USER_CODE_MARKER}|{SECRET_MARKER}|{LIBRARY_BUNDLE_MARKER}",
        {
            USER_CODE_MARKER: f"code mentions {SECRET_MARKER}",
            SECRET_MARKER: "s",
            LIBRARY_BUNDLE_MARKER: f"library mentions {USER_CODE_MARKER}",
        },
    )
    assert rendered == f"code mentions {SECRET_MARKER}|s|library mentions {USER_CODE_MARKER}"


def test_escape_user_code_neutralises_quotes_and_backslashes() -> None:
    escaped = escape_user_code('a = """x"""\nb = \'\\n\'')
    assert '"""' not in escaped
    assert "'''" not in escaped
    assert escaped.count("\\\\") == 1


def test_rendered_program_is_valid_python_and_preserves_user_code() -> None:
    engine = _loaded_engine()
    tricky = (
        'doc = """triple"""\n'
        "single = '''also'''\n"
        "path = 'C:\\\\temp\\\\new'\n"
        "ends_with_quote = \"\\\"\"\n"
        "crlf = 1\r\n"
        "marker = '{{SECRET}}'\n"
        "trailing = '\\\\'"
    )

    program = engine.render(tricky, "deadbeef", "", None)

    assert _user_source(program) == "#@ sourceURL=<user-code>\n" + tricky
    assert 'SECRET = "deadbeef"' in program


def test_marker_text_inside_library_bundle_survives() -> None:
    engine = _loaded_engine()
    bundle = "__runbox_load_library__('m', 'm', 'https://cdn.jsdelivr.net/m.py', \"X = '{{USER_CODE}}'\")"

    program = engine.render("print(1)", "s", bundle, None)

    assert bundle in program
    _ = ast.parse(program)
