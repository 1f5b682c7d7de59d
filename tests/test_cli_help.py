import json

from typer.testing import CliRunner

from cursor_usage import __version__
from cursor_usage.cli import app

runner = CliRunner()


def test_root_help_lists_commands() -> None:
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "sessions" in result.stdout
    assert "watch" in result.stdout
    assert "config-path" in result.stdout


def test_version_flag() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_sessions_json_output(state_db) -> None:
    state_db.add_conversation("c1", last_updated_at=1_704_067_200_000, name="Docs pass")
    state_db.add_turn("c1", "a1", text="x" * 40, created_at="2024-01-01T00:00:01Z")

    result = runner.invoke(app, ["sessions", "--db-path", str(state_db.path), "--json"])

    assert result.exit_code == 0
    rows = json.loads(result.stdout)
    assert len(rows) == 1
    assert rows[0]["sessionId"] == "c1"
    assert rows[0]["sessionName"] == "Docs pass"
    assert rows[0]["tokens"] == {"input": 0, "output": 10}
    assert rows[0]["metadata"] == {"isEstimated": True}


def test_sessions_without_database(tmp_path) -> None:
    result = runner.invoke(app, ["sessions", "--db-path", str(tmp_path / "missing.vscdb")])
    assert result.exit_code == 0
    assert "No usage rows" in result.stdout


def test_config_path_command() -> None:
    result = runner.invoke(app, ["config-path"])
    assert result.exit_code == 0
    assert "config.json" in result.stdout
