import base64

from fleetbridge.dedup import DedupGuard, ExpiringLedger, fingerprint, message_key

from conftest import FakeClock


def test_fingerprint_is_base64_of_joined_parts():
    assert fingerprint("a/b", "voltage: 12") == base64.b64encode(b"a/b:voltage: 12").decode()
    assert fingerprint("t", None) == base64.b64encode(b"t:").decode()


def test_message_key_includes_robot_and_section():
    k1 = message_key("t", "m", "1", "main")
    k2 = message_key("t", "m", "1", "car")
    assert k1 != k2
    assert k1.startswith("1:main:")


def test_ledger_entries_expire_lazily():
    clock = FakeClock()
    ledger = ExpiringLedger(3, clock)
    ledger.add("k")
    assert "k" in ledger
    clock.advance(2.9)
    assert "k" in ledger
    clock.advance(0.2)
    assert "k" not in ledger
    assert len(ledger) == 0


def test_ledger_claim_is_check_and_set():
    clock = FakeClock()
    ledger = ExpiringLedger(5, clock)
    assert ledger.claim("x")
    assert not ledger.claim("x")
    clock.advance(5)
    assert ledger.claim("x")


def test_ledger_per_entry_ttl():
    clock = FakeClock()
    ledger = ExpiringLedger(3, clock)
    ledger.add("long", ttl=10)
    ledger.add("short")
    clock.advance(4)
    assert "long" in ledger
    assert "short" not in ledger


def test_begin_drops_concurrent_arrival():
    guard = DedupGuard(message_window=3, clock=FakeClock())
    assert guard.begin("k")
    assert guard.in_flight == 1
    assert not guard.begin("k")
    assert guard.is_duplicate("k")


def test_end_keeps_key_for_cooldown():
    clock = FakeClock()
    guard = DedupGuard(message_window=3, clock=clock)
    assert guard.begin("k")
    guard.end("k")
    assert guard.in_flight == 0
    assert not guard.begin("k")
    clock.advance(3.01)
    assert guard.begin("k")


def test_end_with_custom_cooldown():
    clock = FakeClock()
    guard = DedupGuard(message_window=3, half_cycle_window=5, clock=clock)
    guard.begin("halfcycle-1-main")
    guard.end("halfcycle-1-main", cooldown=guard.half_cycle_window)
    clock.advance(4)
    assert guard.is_duplicate("halfcycle-1-main")
    clock.advance(1.5)
    assert not guard.is_duplicate("halfcycle-1-main")


def test_toast_guard_is_independent_of_message_guard():
    clock = FakeClock()
    guard = DedupGuard(message_window=3, toast_window=5, clock=clock)
    guard.begin("same text")
    assert guard.claim_toast("same text")
    assert not guard.claim_toast("same text")
    clock.advance(5)
    assert guard.claim_toast("same text")


def test_danger_guard_keys_on_voltage_or_message():
    clock = FakeClock()
    guard = DedupGuard(danger_window=30, clock=clock)
    assert guard.claim_danger("1", "main", voltage=12)
    assert not guard.claim_danger("1", "main", voltage=12)
    assert guard.claim_danger("1", "main", voltage=11)
    assert guard.claim_danger("1", "car", voltage=12)
    assert guard.claim_danger("1", "main", message="motor stall")
    assert not guard.claim_danger("1", "main", message="motor stall")
    clock.advance(29)
    assert not guard.claim_danger("1", "main", voltage=12)
    clock.advance(1)
    assert guard.claim_danger("1", "main", voltage=12)
