"""
Unit tests for application wiring and the command-line entry point.
"""
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from arbiter.__main__ import build_config, find_config_file, main, parse_args
from arbiter.app import ArbiterApp
from arbiter.core.config import ConfigManager
from arbiter.core.events import EventBus
from arbiter.domain.wager import WagerStatus
from arbiter.integrations.executor import RelayExecutor, SimulatedExecutor
from arbiter.integrations.quotes import BinanceQuoteSource, CoinMarketCapQuoteSource
from arbiter.integrations.results import HttpResultSource
from arbiter.services.expiration import SweepReport
from arbiter.services.ledger import Ledger
from tests.helpers import crypto_wager


def make_app(tmp_path: Path, **overrides) -> ArbiterApp:
    values = {"database.path": str(tmp_path / "arbiter.db")}
    values.update(overrides)
    return ArbiterApp(ConfigManager(overrides=values))


class TestWiring:
    """Tests for building components from configuration."""

    def test_dry_run_uses_simulated_executor(self, tmp_path):
        app = make_app(tmp_path)

        assert app.dry_run is True
        assert isinstance(app._executor, SimulatedExecutor)
        assert isinstance(app._quotes, BinanceQuoteSource)
        assert app._results is None
        assert app.ledger.db_path == str(tmp_path / "arbiter.db")

    def test_live_requires_relay_url(self, tmp_path):
        with pytest.raises(ValueError, match="relay_url"):
            make_app(tmp_path, **{"arbiter.dry_run": False})

    def test_live_uses_relay(self, tmp_path):
        app = make_app(
            tmp_path,
            **{"arbiter.dry_run": False, "executor.relay_url": "https://relay.example"},
        )
        assert app.dry_run is False
        assert isinstance(app._executor, RelayExecutor)

    def test_coinmarketcap_requires_api_key(self, tmp_path):
        with pytest.raises(ValueError, match="api_key"):
            make_app(tmp_path, **{"quotes.provider": "coinmarketcap"})

        app = make_app(tmp_path, **{"quotes.provider": "CoinMarketCap", "quotes.api_key": "k"})
        assert isinstance(app._quotes, CoinMarketCapQuoteSource)

    def test_unknown_quote_provider(self, tmp_path):
        with pytest.raises(ValueError, match="Unknown quotes.provider"):
            make_app(tmp_path, **{"quotes.provider": "kraken"})

    def test_results_source_when_configured(self, tmp_path):
        app = make_app(tmp_path, **{"results.base_url": "https://results.example"})
        assert isinstance(app._results, HttpResultSource)


class TestSweepOnce:
    """Tests for run_sweep_once."""

    @pytest.mark.asyncio
    async def test_refunds_expired_wager(self, tmp_path, monkeypatch):
        async def unreachable(self):
            raise ConnectionError("redis down")

        monkeypatch.setattr(EventBus, "connect", unreachable)

        db_path = str(tmp_path / "arbiter.db")
        seed = Ledger(db_path=db_path)
        await seed.start()
        expired = datetime.now(timezone.utc) - timedelta(minutes=1)
        await seed.insert_wager(crypto_wager(wager_id="stale", expiry_time=expired))
        await seed.stop()

        app = make_app(tmp_path)
        report = await app.run_sweep_once()

        assert report == SweepReport(frozen=1, refunded=1)

        check = Ledger(db_path=db_path)
        await check.start()
        try:
            wager = await check.get_wager("stale")
        finally:
            await check.stop()
        assert wager.status == WagerStatus.EXPIRED
        assert wager.settlement_simulated is True


class TestCommandLine:
    """Tests for argument parsing and config overrides."""

    def test_defaults(self):
        args = parse_args([])
        assert args.command is None
        assert args.dry_run is None
        assert args.config is None

    def test_live_sweep(self):
        args = parse_args(["--live", "sweep"])
        assert args.dry_run is False
        assert args.command == "sweep"

    def test_dry_run_and_live_are_exclusive(self):
        with pytest.raises(SystemExit):
            parse_args(["--dry-run", "--live"])

    def test_build_config_applies_overrides(self, tmp_path):
        config_file = tmp_path / "arbiter.toml"
        config_file.write_text('[api]\nport = 9000\n\n[arbiter]\nlog_level = "WARNING"\n')

        args = parse_args(["--config", str(config_file), "--dry-run", "--port", "9100"])
        config = build_config(args)

        assert config.get_bool("arbiter.dry_run") is True
        assert config.get_int("api.port") == 9100
        assert config.get_str("arbiter.log_level") == "WARNING"

    def test_find_config_file(self, tmp_path):
        present = tmp_path / "arbiter.toml"
        present.write_text("")

        assert find_config_file(present) == present
        assert find_config_file(tmp_path / "missing.toml") is None

    def test_version_command(self, capsys):
        assert main(["version"]) == 0
        assert "Arbiter" in capsys.readouterr().out
