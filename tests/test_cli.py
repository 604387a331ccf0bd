from __future__ import annotations

from pathlib import Path

import pytest

from script_exporter import ExporterSettings
from sxp import cli


class _FakeServer:
    instances: list["_FakeServer"] = []
    start_error: OSError | None = None

    def __init__(self, settings: ExporterSettings) -> None:
        self.settings = settings
        self.served = False
        self.stopped = False
        _FakeServer.instances.append(self)

    def start(self) -> None:
        if _FakeServer.start_error is not None:
            raise _FakeServer.start_error

    def serve_forever(self) -> None:
        self.served = True
        raise KeyboardInterrupt

    def shutdown(self) -> None:
        self.stopped = True


@pytest.fixture(autouse=True)
def _patch_server(monkeypatch: pytest.MonkeyPatch) -> None:
    _FakeServer.instances = []
    _FakeServer.start_error = None
    monkeypatch.setattr(cli, "ExporterServer", _FakeServer)
    monkeypatch.setattr(cli, "configure_logging", lambda level: None)


def test_cli_serves_until_interrupted(capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["--script.path", "/opt/scripts", "--timeout", "30s", "--opentsdb"])
    output = capsys.readouterr().out

    assert code == 0
    server = _FakeServer.instances[0]
    assert server.served and server.stopped
    assert server.settings.script_path == "/opt/scripts"
    assert server.settings.timeout_seconds == 30.0
    assert server.settings.opentsdb is True
    assert "Script Exporter" in output
    assert "Shutting down" in output


def test_cli_bind_failure_returns_one(capsys: pytest.CaptureFixture[str]) -> None:
    _FakeServer.start_error = OSError("Address already in use")
    code = cli.main(["--web.listen-address", "127.0.0.1:9661"])
    output = capsys.readouterr().out

    assert code == 1
    assert "Unable to listen" in output
    assert _FakeServer.instances[0].served is False


def test_cli_help_lists_examples(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main(["--help"])
    output = capsys.readouterr().out

    assert exc.value.code == 0
    assert "Quick Examples:" in output
    assert "--script-workers" in output


@pytest.mark.parametrize(
    "argv",
    [
        ["--script-workers", "0"],
        ["--timeout", "soon"],
        ["--web.telemetry-path", "metrics"],
        ["--config", "/nonexistent/exporter.toml"],
    ],
)
def test_cli_rejects_invalid_settings(argv: list[str], capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc:
        cli.main(argv)
    assert exc.value.code == 2
    assert "Error:" in capsys.readouterr().out
    assert _FakeServer.instances == []


def test_cli_flags_override_config_file(tmp_path: Path) -> None:
    config = tmp_path / "exporter.toml"
    config.write_text(
        "[exporter]\nscript_path = \"/from/file\"\nscript_workers = 2\ntimeout_seconds = \"10s\"\n",
        encoding="utf-8",
    )
    code = cli.main(["--config", str(config), "--script-workers", "5"])

    settings = _FakeServer.instances[0].settings
    assert code == 0
    assert settings.script_path == "/from/file"
    assert settings.script_workers == 5
    assert settings.timeout_seconds == 10.0
    assert settings.config_path == str(config)
