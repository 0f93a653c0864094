import pytest

from rental_sync import __main__ as cli
from rental_sync.config import ConfigError


def test_subcommands_require_site_id():
    with pytest.raises(SystemExit):
        cli.main(["sync"])

    with pytest.raises(SystemExit):
        cli.main(["offline-sync"])

    with pytest.raises(SystemExit):
        cli.main([])


def test_db_upgrade_uses_configured_database(monkeypatch, make_config):
    observed: dict[str, object] = {}
    monkeypatch.setattr(cli, "get_config", lambda: make_config("sqlite+aiosqlite:///upgrade.db"))
    monkeypatch.setattr(cli, "run_alembic_upgrade", lambda url, revision: observed.update(url=url, revision=revision))

    assert cli.main(["db-upgrade", "--revision", "0001_init"]) == 0
    assert observed == {"url": "sqlite+aiosqlite:///upgrade.db", "revision": "0001_init"}


def test_configuration_errors_exit_with_code_2(monkeypatch, capsys):
    def fail_config():
        raise ConfigError("Missing required environment variable: DATABASE_URL")

    monkeypatch.setattr(cli, "get_config", fail_config)

    assert cli.main(["sync", "--site-id", "zanchen"]) == 2
    assert "DATABASE_URL" in capsys.readouterr().err
