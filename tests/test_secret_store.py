import stat
from pathlib import Path

import pytest

from usage_core.cooldown import ProbeCooldownCache
from usage_core.secret_store import (
    InMemorySecretStore,
    KeychainSecretStore,
    SecretStoreError,
)
from usage_core.types import ProviderKind, UsageSnapshot

FAKE_SECURITY = """#!/bin/sh
echo "$@" >> "{log}"
case "$1" in
  find-generic-password)
    if [ "$3" = "missing" ]; then exit 44; fi
    if [ "$3" = "broken" ]; then echo "denied" >&2; exit 51; fi
    echo '{{"claudeAiOauth": {{"accessToken": "from-keychain"}}}}'
    ;;
  add-generic-password)
    exit 0
    ;;
  dump-keychain)
    echo 'keychain: "/Users/me/Library/Keychains/login.keychain-db"'
    echo '    "svce"<blob>="Claude Code-credentials"'
    echo '    "svce"<blob>="Claude Code-credentials-1a2b"'
    echo '    "svce"<blob>="Other Service"'
    ;;
esac
"""


@pytest.fixture
def fake_security(tmp_path: Path):
    log = tmp_path / "calls.log"
    script = tmp_path / "security"
    script.write_text(FAKE_SECURITY.format(log=log), encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    return script, log


@pytest.mark.asyncio
async def test_in_memory_prefix_listing() -> None:
    store = InMemorySecretStore({"svc-b": "2", "svc-a": "1", "other": "3"})

    assert await store.list_keys_with_prefix("svc") == ["svc-a", "svc-b"]
    await store.delete("svc-a")
    assert await store.get("svc-a") is None


@pytest.mark.asyncio
async def test_keychain_get_reads_password(fake_security) -> None:
    script, log = fake_security
    store = KeychainSecretStore(account="me", security_bin=str(script))

    value = await store.get("Claude Code-credentials")

    assert "from-keychain" in value
    assert log.read_text().splitlines() == [
        "find-generic-password -s Claude Code-credentials -w"
    ]


@pytest.mark.asyncio
async def test_keychain_missing_item_is_none(fake_security) -> None:
    script, _ = fake_security
    store = KeychainSecretStore(account="me", security_bin=str(script))

    assert await store.get("missing") is None


@pytest.mark.asyncio
async def test_keychain_failure_raises(fake_security) -> None:
    script, _ = fake_security
    store = KeychainSecretStore(account="me", security_bin=str(script))

    with pytest.raises(SecretStoreError, match="denied"):
        await store.get("broken")


@pytest.mark.asyncio
async def test_keychain_put_updates_in_place(fake_security) -> None:
    script, log = fake_security
    store = KeychainSecretStore(account="me", security_bin=str(script))

    await store.put("svc", "secret")

    assert log.read_text().strip() == "add-generic-password -U -a me -s svc -w secret"


@pytest.mark.asyncio
async def test_keychain_prefix_scan_parses_dump(fake_security) -> None:
    script, _ = fake_security
    store = KeychainSecretStore(account="me", security_bin=str(script))

    keys = await store.list_keys_with_prefix("Claude Code-credentials")

    assert keys == ["Claude Code-credentials", "Claude Code-credentials-1a2b"]


@pytest.mark.asyncio
async def test_missing_security_binary(tmp_path: Path) -> None:
    store = KeychainSecretStore(account="me", security_bin=str(tmp_path / "nope"))

    with pytest.raises(SecretStoreError):
        await store.get("svc")


# =============================================================================
# PROBE COOLDOWN
# =============================================================================


@pytest.mark.asyncio
async def test_cooldown_serves_cached_snapshot_until_expiry(clock) -> None:
    cache = ProbeCooldownCache(cooldown_seconds=300, clock=clock)
    snapshot = UsageSnapshot(provider=ProviderKind.CLAUDE)

    await cache.put("claude:headers", snapshot)
    clock.advance(120)

    assert await cache.get("claude:headers") is snapshot
    assert await cache.get_cooldown_remaining("claude:headers") == 180

    clock.advance(180)
    assert await cache.get("claude:headers") is None
    assert await cache.is_cooling_down("claude:headers") is False


@pytest.mark.asyncio
async def test_cooldown_clear(clock) -> None:
    cache = ProbeCooldownCache(cooldown_seconds=300, clock=clock)
    await cache.put("a", UsageSnapshot(provider=ProviderKind.CLAUDE))
    await cache.put("b", UsageSnapshot(provider=ProviderKind.CODEX))

    await cache.clear("a")
    assert await cache.get("a") is None
    assert await cache.get("b") is not None

    await cache.clear()
    assert await cache.get("b") is None
