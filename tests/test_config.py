import pytest

from solsync.config import Settings
from solsync.util.env import DEFAULT_RPC_URL

_VARS = [
    "SOLANA_RPC_URL",
    "HELIUS_RPC_URL",
    "SOLANA_WS_URL",
    "HELIUS_WS_URL",
    "SOLSYNC_COMMITMENT",
    "SOLSYNC_RESOLVE_INTERVAL",
    "SOLSYNC_RESOLVE_BATCH",
    "SOLSYNC_POOL_SIZE",
    "SOLSYNC_SKIP_PREFLIGHT",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    settings = Settings.from_env()
    assert settings == Settings()
    assert settings.rpc_url == DEFAULT_RPC_URL
    assert settings.resolved_ws_url == "wss://api.mainnet-beta.solana.com"
    assert settings.blockhash_commitment == "finalized"
    assert settings.pool_size == 100


def test_overrides(monkeypatch):
    monkeypatch.setenv("SOLANA_RPC_URL", "http://localhost:8899")
    monkeypatch.setenv("SOLSYNC_COMMITMENT", "Confirmed")
    monkeypatch.setenv("SOLSYNC_RESOLVE_INTERVAL", "0.25")
    monkeypatch.setenv("SOLSYNC_RESOLVE_BATCH", "50")
    monkeypatch.setenv("SOLSYNC_SKIP_PREFLIGHT", "no")

    settings = Settings.from_env()
    assert settings.rpc_url == "http://localhost:8899"
    assert settings.resolved_ws_url == "ws://localhost:8899"
    assert settings.commitment == "confirmed"
    assert settings.resolve_interval == 0.25
    assert settings.resolve_batch_size == 50
    assert settings.skip_preflight is False


def test_invalid_values_fall_back(monkeypatch):
    monkeypatch.setenv("SOLSYNC_COMMITMENT", "eventually")
    monkeypatch.setenv("SOLSYNC_POOL_SIZE", "lots")
    monkeypatch.setenv("SOLSYNC_RESOLVE_BATCH", "0")

    settings = Settings.from_env()
    assert settings.commitment == "processed"
    assert settings.pool_size == 100
    assert settings.resolve_batch_size == 1


def test_placeholder_urls_are_ignored(monkeypatch):
    monkeypatch.setenv("SOLANA_RPC_URL", "https://mainnet.helius-rpc.com/?api-key=YOUR_KEY")
    monkeypatch.setenv("HELIUS_RPC_URL", "https://rpc.example")
    monkeypatch.setenv("SOLANA_WS_URL", "wss://ws.example")

    settings = Settings.from_env()
    assert settings.rpc_url == "https://rpc.example"
    assert settings.resolved_ws_url == "wss://ws.example"


def test_bool_env_unknown_spelling_uses_default(monkeypatch):
    monkeypatch.setenv("SOLSYNC_SKIP_PREFLIGHT", "maybe")
    assert Settings.from_env().skip_preflight is True
