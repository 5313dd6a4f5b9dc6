import threading

from tradeledger.locks import CounterStore, SettleLocker


def test_counter_store_incr_and_get():
    store = CounterStore()
    assert store.get("k") is None
    assert store.exists("k") is False
    assert store.incr("k") == 1
    second = store.incr("k")
    assert store.get("k") == second
    assert second > 1


def test_counter_store_decr_reverses_incr():
    store = CounterStore()
    before = store.incr("k")
    store.incr("k")
    assert store.decr("k") == before


def test_counter_store_delete():
    store = CounterStore()
    store.incr("k")
    assert store.delete("k") is True
    assert store.exists("k") is False
    assert store.delete("k") is False


def test_lock_uses_settle_lock_key():
    store = CounterStore()
    locker = SettleLocker(store)
    locker.lock("A1")
    assert store.exists("settle.lock.A1") is True
    assert locker.is_locked("A1") is True


def test_unlock_removes_lock():
    locker = SettleLocker()
    locker.lock("A1", "B1")
    assert locker.is_locked("A1") and locker.is_locked("B1")
    locker.unlock("A1", "B1")
    assert locker.is_locked("A1") is False
    assert locker.is_locked("B1") is False


def test_nested_locks_need_matching_unlocks():
    locker = SettleLocker()
    locker.lock("A1")
    locker.lock("A1")
    locker.unlock("A1")
    assert locker.is_locked("A1") is True
    locker.unlock("A1")
    assert locker.is_locked("A1") is False


def test_unlock_without_lock_leaves_negative_counter():
    store = CounterStore()
    locker = SettleLocker(store)
    locker.unlock("X")
    assert store.get("settle.lock.X") == -1
    assert locker.is_locked("X") is True


def test_other_orders_unaffected():
    locker = SettleLocker()
    locker.lock("A1")
    assert locker.is_locked("B2") is False


def test_concurrent_balanced_locking():
    locker = SettleLocker()

    def work():
        for _ in range(200):
            locker.lock("A1", "B1")
            locker.unlock("A1", "B1")

    threads = [threading.Thread(target=work) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert locker.is_locked("A1") is False
    assert locker.is_locked("B1") is False