import json

import pytest

from perpdex.app.cli import main
from perpdex.auth.signing import address_from_key

ADMIN_KEY = "0x" + "44" * 32
TRADER_KEY = "0x" + "55" * 32


@pytest.fixture()
def run(tmp_path, capsys, monkeypatch):
    monkeypatch.delenv("PERPDEX_SECRET_KEY", raising=False)
    cfg = tmp_path / "config.json"
    cfg.write_text(
        json.dumps(
            {
                "oracle": {"provider": "static", "static_prices": {"BTC": 100}},
                "collateral": {"faucet_enabled": True},
                "storage": {"state_db": str(tmp_path / "state.db")},
            }
        )
    )

    def _run(*argv, key=None):
        args = ["--config", str(cfg)]
        if key:
            args += ["--secret-key", key]
        code = main(args + list(argv))
        out, err = capsys.readouterr()
        return code, (json.loads(out) if code == 0 else json.loads(err.strip().splitlines()[-1]))

    return _run


def test_cli_open_show_close(run):
    trader = address_from_key(TRADER_KEY)
    code, market = run(
        "init-market", "--market-id", "BTC-PERP", "--oracle", "BTC",
        "--min-collateral", "100", "--max-leverage", "10", "--liquidation-threshold", "20",
        key=ADMIN_KEY,
    )
    assert code == 0
    assert market["admin"] == address_from_key(ADMIN_KEY)

    code, bal = run("mint", "--mint", "USDC", "--amount", "2000", key=TRADER_KEY)
    assert code == 0 and bal["balance"] == 2000

    code, opened = run(
        "open", "--market-id", "BTC-PERP", "--side", "long", "--collateral", "1000",
        "--leverage", "5", "--mint", "USDC",
        key=TRADER_KEY,
    )
    assert code == 0
    assert opened["size"] == 5000

    code, shown = run("show-position", "--position", opened["position"])
    assert code == 0
    assert shown["position"]["key"] == opened["position"]
    assert shown["margin"]["pnl"] == 0
    assert shown["margin"]["settlement"] == 995

    code, listed = run("positions", "--trader", trader)
    assert [p["key"] for p in listed] == [opened["position"]]
    assert listed[0]["market"] == "BTC-PERP"

    code, closed = run("close", "--position", opened["position"], key=TRADER_KEY)
    assert code == 0
    assert closed["amount_returned"] == 995

    code, events = run("events")
    assert [e["kind"] for e in events] == ["opened", "closed"]
    code, balances = run("balance", "--owner", trader)
    assert balances == {"USDC": 1995}


def test_cli_reports_error_codes(run):
    run(
        "init-market", "--market-id", "BTC-PERP", "--oracle", "BTC",
        "--min-collateral", "100", "--max-leverage", "10", "--liquidation-threshold", "20",
        key=ADMIN_KEY,
    )
    code, err = run(
        "open", "--market-id", "BTC-PERP", "--side", "short", "--collateral", "1000",
        "--leverage", "5", "--mint", "USDC",
        key=TRADER_KEY,
    )
    assert code == 1
    assert err["error"] == "InsufficientFunds"

    code, err = run("update-market", "--market-id", "BTC-PERP", "--deactivate", key=TRADER_KEY)
    assert code == 1
    assert err["error"] == "Unauthorized"

    code, err = run("show-market", "--market-id", "ETH-PERP")
    assert code == 1
    assert err["error"] == "MarketNotFound"

    code, err = run("show-market", "--market-id", "X" * 40)
    assert code == 2
    assert err["error"] == "InvalidArgument"

    code, markets = run("markets")
    assert code == 0
    assert [m["label"] for m in markets] == ["BTC-PERP"]
    assert markets[0]["is_active"] is True


def test_signed_command_requires_key(run):
    with pytest.raises(SystemExit):
        run("mint", "--mint", "USDC", "--amount", "1")


def test_faucet_off_for_persistent_ledger_without_config(tmp_path, capsys, monkeypatch):
    monkeypatch.delenv("PERPDEX_SECRET_KEY", raising=False)
    db = str(tmp_path / "state.db")
    code = main(["--state-db", db, "--secret-key", TRADER_KEY, "mint", "--mint", "USDC", "--amount", "10"])
    _, err = capsys.readouterr()
    assert code == 1
    assert json.loads(err.strip().splitlines()[-1])["error"] == "Unauthorized"

    code = main(["--secret-key", TRADER_KEY, "mint", "--mint", "USDC", "--amount", "10"])
    out, _ = capsys.readouterr()
    assert code == 0
    assert json.loads(out)["balance"] == 10
