import pytest

from pinger import main as entry
from pinger.config import ConfigError, Settings

REQUIRED = ("RPC_ENDPOINT", "WS_ENDPOINT", "WALLET_PRIVATE_KEYPAIR", "PINGER_REGION", "VA_API_KEY")


def test_missing_config_exits_with_config_code(monkeypatch, tmp_path) -> None:
    for key in REQUIRED:
        monkeypatch.delenv(key, raising=False)
    assert entry.main(["--log-dir", str(tmp_path)]) == entry.EXIT_CONFIG
    assert (tmp_path / "run.log").exists()


def test_bad_keypair_is_a_config_error() -> None:
    settings = Settings(
        rpc_endpoint="https://rpc.example",
        ws_endpoint="wss://ws.example",
        wallet_keypair="not-base58-at-all!",
        pinger_region="fra",
    )
    with pytest.raises(ConfigError, match="WALLET_PRIVATE_KEYPAIR"):
        entry.build_signer(settings)
