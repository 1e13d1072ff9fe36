import json
import random
import threading


def _run_together(*calls):
    barrier = threading.Barrier(len(calls))
    errors = []

    def worker(fn):
        try:
            barrier.wait()
            fn()
        except Exception as exc:  # surfaced through the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(fn,)) for fn in calls]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []


def test_concurrent_allow_and_block_end_in_one_classification(store, store_path):
    rng = random.Random(1234)
    for i in range(200):
        device_id = f"dev-{i}"
        calls = [lambda: store.allow(device_id), lambda: store.block(device_id)]
        if rng.random() < 0.5:
            store.check(device_id)
        rng.shuffle(calls)
        _run_together(*calls)

        snap = store.list()
        in_allow = device_id in snap.allow
        in_block = device_id in snap.block
        assert in_allow != in_block
        assert device_id not in snap.pending

    on_disk = json.loads(store_path.read_text(encoding="utf-8"))
    assert set(on_disk["allow"]).isdisjoint(on_disk["block"])
    assert on_disk["pending"] == []


def test_concurrent_checks_insert_pending_once(store):
    _run_together(*[lambda: store.check("fresh") for _ in range(16)])
    assert store.list().pending == ["fresh"]


def test_list_never_sees_half_applied_move(store):
    store.allow("dev1")
    seen_both = []
    done = threading.Event()

    def flip():
        for _ in range(300):
            store.block("dev1")
            store.allow("dev1")
        done.set()

    def watch():
        while not done.is_set():
            snap = store.list()
            if "dev1" in snap.allow and "dev1" in snap.block:
                seen_both.append(snap)
            if "dev1" not in snap.allow and "dev1" not in snap.block:
                seen_both.append(snap)

    _run_together(flip, watch)
    assert seen_both == []
