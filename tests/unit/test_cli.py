"""Unit tests for the maintenance command line."""

import json

import pytest

from kvstash.cli import build_parser, main

pytestmark = pytest.mark.unit


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Point the CLI at a throwaway persistent cache."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CACHE_BACKEND", "persistent")
    monkeypatch.setenv("CACHE_PREFIX", "cli_")
    monkeypatch.setenv("CACHE_DB_PATH", str(tmp_path / "cache.db"))
    monkeypatch.setenv("CACHE_FILE_DIR", str(tmp_path / "files"))
    monkeypatch.delenv("CACHE_REDIS_URL", raising=False)
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    return tmp_path


class TestParser:

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_set_options(self):
        args = build_parser().parse_args(["--backend", "file", "set", "greeting", "hello", "--ttl", "60"])

        assert args.backend == "file"
        assert args.command == "set"
        assert args.ttl == 60.0


class TestCommands:

    def test_set_then_get(self, cli_env, capsys):
        assert main(["set", "menu", '{"items": [1, 2]}']) == 0
        assert main(["get", "menu"]) == 0

        output = capsys.readouterr().out
        assert json.loads(output[output.index("{"):]) == {"items": [1, 2]}

    def test_plain_string_value(self, cli_env, capsys):
        main(["set", "greeting", "hello world"])
        capsys.readouterr()

        assert main(["get", "greeting"]) == 0
        assert capsys.readouterr().out.strip() == '"hello world"'

    def test_get_missing_key(self, cli_env, capsys):
        assert main(["get", "missing"]) == 1
        assert "not found" in capsys.readouterr().err

    def test_delete_and_flush(self, cli_env):
        main(["set", "a", "1"])
        main(["set", "b", "2"])

        assert main(["delete", "a"]) == 0
        assert main(["get", "a"]) == 1

        assert main(["flush"]) == 0
        assert main(["get", "b"]) == 1

    def test_prefix_override(self, cli_env):
        main(["--prefix", "other_", "set", "key", "1"])

        assert main(["get", "key"]) == 1
        assert main(["--prefix", "other_", "get", "key"]) == 0

    def test_stats(self, cli_env, capsys):
        main(["set", "key", "1"])
        capsys.readouterr()

        assert main(["stats"]) == 0
        stats = json.loads(capsys.readouterr().out)
        assert stats["backend"] == "persistent"
        assert stats["entries"]["count"] == 1

    def test_health(self, cli_env, capsys):
        assert main(["health"]) == 0
        assert json.loads(capsys.readouterr().out)["overall_health"] is True

    def test_cleanup(self, cli_env, capsys):
        assert main(["cleanup"]) == 0
        assert "Removed 0 expired entries" in capsys.readouterr().out

    def test_invalid_configuration(self, cli_env, monkeypatch, capsys):
        monkeypatch.setenv("CACHE_TTL_SECONDS", "-5")

        assert main(["stats"]) == 2
        assert "Configuration issues found" in capsys.readouterr().err
