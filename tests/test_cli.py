"""Tests for configuration loading and the pygit-mirror command line."""

import json
from pathlib import Path

import pytest

from pygit_mirror import (
    Capability,
    CredentialResolver,
    FileSecretStore,
    build_config,
    create_argument_parser,
    load_config_file,
    main,
)
from pygit_mirror.config import CONFIG_FILENAME


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    return home


class TestArgumentParser:
    def test_serve_interval_maps_to_sync_interval(self):
        args = create_argument_parser().parse_args(["serve", "--port", "9000", "--interval", "30"])
        assert args.port == 9000
        assert args.sync_interval == 30.0

    def test_connect_defaults_to_push(self):
        args = create_argument_parser().parse_args(["connect", "r1", "https://github.com/o/r.git"])
        assert args.direction == "push"
        assert not args.auto_sync

    def test_command_required(self):
        with pytest.raises(SystemExit):
            create_argument_parser().parse_args([])

    def test_invalid_direction(self):
        with pytest.raises(SystemExit):
            create_argument_parser().parse_args(["connect", "r1", "u", "--direction", "sideways"])


class TestLoadConfigFile:
    def test_data_dir_file(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text('port = 9999\nallowed_remote_hosts = ["example.com"]\n')
        assert load_config_file(tmp_path) == {"port": 9999, "allowed_remote_hosts": ["example.com"]}

    def test_home_fallback(self, tmp_path, isolated_home):
        (isolated_home / CONFIG_FILENAME).write_text('default_branch = "trunk"\n')
        assert load_config_file(tmp_path / "nowhere") == {"default_branch": "trunk"}

    def test_explicit_path_missing(self, tmp_path, capsys):
        assert load_config_file(tmp_path, str(tmp_path / "absent.toml")) == {}
        assert "not found" in capsys.readouterr().out

    def test_malformed(self, tmp_path, capsys):
        (tmp_path / CONFIG_FILENAME).write_text("port = = 1")
        assert load_config_file(tmp_path) == {}
        assert "Failed to parse" in capsys.readouterr().out


class TestBuildConfig:
    def test_cli_overrides_file(self, tmp_path):
        args = create_argument_parser().parse_args(["--data-dir", str(tmp_path), "serve", "--port", "9000"])
        config = build_config(args, {"port": 1234, "host": "0.0.0.0", "git_timeout": 5})
        assert config.port == 9000
        assert config.host == "0.0.0.0"
        assert config.git_timeout == 5
        assert config.data_dir == tmp_path

    def test_unknown_key_warns(self, capsys):
        args = create_argument_parser().parse_args(["status", "r1"])
        config = build_config(args, {"bogus": 1})
        assert "Unknown config key 'bogus'" in capsys.readouterr().out
        assert config.remote_name == "github"

    def test_data_dir_expands_user(self, isolated_home):
        args = create_argument_parser().parse_args(["status", "r1"])
        config = build_config(args, {"data_dir": "~/mirror"})
        assert config.data_dir == isolated_home / "mirror"


def run_cli(data_dir: Path, *argv: str) -> int:
    with pytest.raises(SystemExit) as excinfo:
        main(["--data-dir", str(data_dir), "--json", *argv])
    return excinfo.value.code


@pytest.fixture
def data_dir(mirror):
    path = mirror.config.data_dir
    (path / CONFIG_FILENAME).write_text('default_branch = "main"\nallowed_remote_hosts = []\n')
    return path


class TestCommands:
    def test_repo_add(self, data_dir, mirror, capsys):
        assert run_cli(data_dir, "repo-add", "demo", "--public") == 0
        payload = json.loads(capsys.readouterr().out)
        assert payload["id"] == "demo"
        assert payload["visibility"] == "public"
        assert mirror.registry.get("demo").is_public
        assert mirror.git(mirror.config.repo_path("demo"), "symbolic-ref", "HEAD") == "refs/heads/main"

    def test_user_add_with_grants(self, data_dir, mirror, capsys):
        assert run_cli(data_dir, "user-add", "bob", "--password", "pw", "--grant", "push", "--grant", "read-private") == 0
        assert json.loads(capsys.readouterr().out)["capabilities"] == ["push", "read-private"]
        bob = mirror.users.find_by_username("bob")
        assert bob.capabilities == frozenset({Capability.PUSH, Capability.READ_PRIVATE})
        assert not bob.is_admin

    def test_repo_add_invalid_id(self, data_dir, capsys):
        assert run_cli(data_dir, "repo-add", "bad.git") == 1
        assert "invalid repository id" in json.loads(capsys.readouterr().out)["error"]

    def test_user_and_token(self, data_dir, mirror, capsys):
        assert run_cli(data_dir, "user-add", "alice", "--password", "pw", "--admin") == 0
        assert json.loads(capsys.readouterr().out)["capabilities"] == ["admin"]
        assert run_cli(data_dir, "token-create", "alice", "--days", "7") == 0
        token = json.loads(capsys.readouterr().out)
        assert token["id"].startswith("tok-")
        assert token["expires_at"]
        assert mirror.users.get_token(token["id"]).secret == token["secret"]

    def test_connect_sync_status(self, data_dir, mirror, capsys):
        sha = mirror.local_commit()
        assert run_cli(data_dir, "connect", "r1", str(mirror.github), "--direction", "push") == 0
        capsys.readouterr()
        assert run_cli(data_dir, "sync", "r1") == 0
        outcome = json.loads(capsys.readouterr().out)
        assert outcome["pushed"]
        assert outcome["status"] == "synced"
        assert mirror.head(mirror.github) == sha

        assert run_cli(data_dir, "status", "r1") == 0
        status = json.loads(capsys.readouterr().out)
        assert (status["ahead"], status["behind"], status["status"]) == (0, 0, "synced")

    def test_sync_failure_exit_code(self, data_dir, mirror, tmp_path, capsys):
        mirror.local_commit()
        assert run_cli(data_dir, "connect", "r1", str(tmp_path / "gone.git")) == 0
        capsys.readouterr()
        assert run_cli(data_dir, "sync", "r1") == 1
        assert json.loads(capsys.readouterr().out)["push_error"]

    def test_push_and_pull(self, data_dir, mirror, capsys):
        mirror.local_commit()
        run_cli(data_dir, "configure-remote", "r1", str(mirror.github))
        assert run_cli(data_dir, "push", "r1") == 0
        sha = mirror.github_commit()
        assert run_cli(data_dir, "pull", "r1", "--branch", "main") == 0
        assert mirror.head(mirror.repo_path) == sha
        capsys.readouterr()

    def test_disconnect(self, data_dir, mirror, capsys):
        run_cli(data_dir, "connect", "r1", str(mirror.github), "--auto-sync")
        assert run_cli(data_dir, "disconnect", "r1") == 0
        assert not mirror.registry.get("r1").remote_configured
        capsys.readouterr()

    def test_accounts(self, data_dir, mirror, capsys):
        run_cli(data_dir, "user-add", "alice", "--password", "pw")
        alice = mirror.users.find_by_username("alice")
        capsys.readouterr()
        stored = CredentialResolver(FileSecretStore(mirror.config.secrets_path))

        assert run_cli(data_dir, "account-connect", "alice", "ghp_x", "--github-username", "octo") == 0
        assert json.loads(capsys.readouterr().out) == {"user_id": alice.id, "connected": True}
        assert stored.user_token(alice.id).token == "ghp_x"

        assert run_cli(data_dir, "account-disconnect", "alice") == 0
        assert json.loads(capsys.readouterr().out)["connected"] is False
        assert stored.user_token(alice.id) is None

    def test_import(self, data_dir, mirror, capsys):
        sha = mirror.github_commit()
        assert run_cli(data_dir, "import", "copy", str(mirror.github)) == 0
        assert json.loads(capsys.readouterr().out)["sync_direction"] == "pull"
        assert mirror.head(mirror.config.repo_path("copy")) == sha

    def test_sync_all_without_auto_sync(self, data_dir, capsys):
        assert run_cli(data_dir, "sync-all") == 0
        assert json.loads(capsys.readouterr().out)["repos_processed"] == 0

    def test_unknown_repository(self, data_dir, capsys):
        assert run_cli(data_dir, "status", "ghost") == 1
        assert "repository not found" in json.loads(capsys.readouterr().out)["error"]
