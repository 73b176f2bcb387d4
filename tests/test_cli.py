from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from runbox.cli import app

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    config_path = tmp_path / "runbox.yaml"
    with open(config_path, "w") as f:
        yaml.dump(
            {
                "state_path": str(tmp_path / "state.db"),
                "timeout_ms": 8000,
                "log_level": "ERROR",
            },
            f,
        )
    return config_path


def test_origins_add_list_remove(config_file: Path) -> None:
    result = runner.invoke(app, ["origins", "add", "NewCDN.example", "--config", str(config_file)])
    assert result.exit_code == 0
    assert "Trusted NewCDN.example" in result.output

    result = runner.invoke(app, ["origins", "add", "newcdn.example", "--config", str(config_file)])
    assert result.exit_code == 0
    assert "already trusted" in result.output

    result = runner.invoke(app, ["origins", "list", "--config", str(config_file)])
    assert "cdn.jsdelivr.net (default)" in result.output
    assert "newcdn.example\n" in result.output

    result = runner.invoke(app, ["origins", "remove", "newcdn.example", "--config", str(config_file)])
    assert result.exit_code == 0

    result = runner.invoke(app, ["policy", "--config", str(config_file)])
    assert "newcdn.example" not in result.output
    assert "connect-src 'none';" in result.output


def test_default_origin_cannot_be_removed(config_file: Path) -> None:
    result = runner.invoke(app, ["origins", "remove", "gitlab.com", "--config", str(config_file)])
    assert result.exit_code == 1
    assert "cannot be removed" in result.output


def test_libs_add_declined_for_untrusted_origin(config_file: Path) -> None:
    result = runner.invoke(
        app,
        ["libs", "add", "https://newcdn.example/lib.py", "--config", str(config_file)],
        input="n\n",
    )
    assert result.exit_code == 1
    assert "Trust origin newcdn.example?" in result.output

    result = runner.invoke(app, ["libs", "list", "--config", str(config_file)])
    assert "No libraries added." in result.output


def test_libs_add_with_yes_then_remove(config_file: Path) -> None:
    url = "https://newcdn.example/helpers-1.2.0.py"
    result = runner.invoke(app, ["libs", "add", url, "--yes", "--config", str(config_file)])
    assert result.exit_code == 0
    assert "Added helpers" in result.output

    result = runner.invoke(app, ["libs", "list", "--config", str(config_file)])
    assert "helpers v1.2.0" in result.output
    library_id = result.output.split()[0]
    assert library_id.startswith("lib_")

    result = runner.invoke(app, ["libs", "add", url, "--yes", "--config", str(config_file)])
    assert result.exit_code == 1
    assert "Library already added" in result.output

    result = runner.invoke(app, ["libs", "remove", library_id, "--config", str(config_file)])
    assert result.exit_code == 0
    result = runner.invoke(app, ["libs", "remove", library_id, "--config", str(config_file)])
    assert result.exit_code == 1


def test_run_prints_output(config_file: Path, tmp_path: Path) -> None:
    script = tmp_path / "hello.py"
    script.write_text("print('hello from the sandbox')\n")

    result = runner.invoke(app, ["run", str(script), "--config", str(config_file)])

    assert result.exit_code == 0
    assert "hello from the sandbox" in result.output


def test_run_syntax_error_exits_nonzero(config_file: Path, tmp_path: Path) -> None:
    script = tmp_path / "broken.py"
    script.write_text("def f(:\n")

    result = runner.invoke(app, ["run", str(script), "--config", str(config_file)])

    assert result.exit_code == 1
    assert "SyntaxError" in result.output


def test_run_timeout_exits_nonzero(config_file: Path, tmp_path: Path) -> None:
    script = tmp_path / "spin.py"
    script.write_text("while True:\n    pass\n")

    result = runner.invoke(
        app, ["run", str(script), "--timeout-ms", "500", "--config", str(config_file)]
    )

    assert result.exit_code == 1
    assert "Execution timeout (500ms). Sandbox reset." in result.output


def test_bad_config_exits_nonzero(tmp_path: Path) -> None:
    config_path = tmp_path / "bad.yaml"
    config_path.write_text("timeout_ms: zero\n")

    result = runner.invoke(app, ["policy", "--config", str(config_path)])

    assert result.exit_code == 1
    assert "Invalid configuration" in result.output


def test_default_origin_check_ignores_case(config_file: Path) -> None:
    result = runner.invoke(app, ["origins", "remove", " GitLab.COM", "--config", str(config_file)])
    assert result.exit_code == 1
    assert "cannot be removed" in result.output
