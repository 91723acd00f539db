"""Tests for the command-line entry point."""

from __future__ import annotations

import asyncio

import pytest

import main
from arbengine.models import PriceRecord
from arbengine.store import Store


class TestParseArgs:
    def test_monitor_flags(self):
        args = main.parse_args(["monitor", "-e", "spot-a, perp-a", "-s", "BTC/USDT,ETH/USDT", "-a", "--test"])
        assert args.command == "monitor"
        assert args.venues == ["spot-a", "perp-a"]
        assert args.symbols == ["BTC/USDT", "ETH/USDT"]
        assert args.auto is True
        assert args.test is True
        assert args.all_symbols is None

    def test_cancel_needs_id(self):
        with pytest.raises(SystemExit):
            main.parse_args(["cancel-order"])
        assert main.parse_args(["cancel-order", "-i", "7"]).id == 7

    def test_command_required(self):
        with pytest.raises(SystemExit):
            main.parse_args([])


class TestMain:
    def test_missing_config_exits_with_error(self, tmp_path, capsys):
        assert main.main(["-c", str(tmp_path / "missing.yaml"), "volume-stats"]) == 1
        assert "Cannot start" in capsys.readouterr().err

    def test_volume_stats_reads_the_configured_database(self, tmp_path, capsys):
        db = tmp_path / "arb.db"
        store = Store(db)
        store.insert_prices([PriceRecord(symbol="BTC/USDT", venue="spot-a", price=1.0, volume=42.0, timestamp=1.0)])
        store.close()
        config = tmp_path / "config.yaml"
        config.write_text(f"system:\n  database: {db}\n")

        assert main.main(["-c", str(config), "volume-stats"]) == 0
        assert "spot-a" in capsys.readouterr().out

    def test_aborted_run_exits_cleanly(self, tmp_path, capsys, monkeypatch):
        async def aborted(cfg, logger):
            raise asyncio.CancelledError()

        monkeypatch.setattr(main, "run_pair_symbols", aborted)
        config = tmp_path / "config.yaml"
        config.write_text(f"system:\n  database: {tmp_path / 'arb.db'}\n")

        assert main.main(["-c", str(config), "pair-symbols"]) == 0
        assert "Stopped by user" in capsys.readouterr().out
