from boxoffice.load_client import Result, Stats, check_no_oversell


def test_summary_counts_and_percentiles():
    stats = Stats()
    stats.add(Result(ok=True, outcome="paid", quantity=2, t_observed=0.1))
    stats.add(Result(ok=True, outcome="paid", quantity=1, t_observed=0.3))
    stats.add(Result(ok=True, outcome="failed", t_observed=0.2))
    stats.add(Result(ok=True, outcome="SOLD_OUT"))
    stats.add(Result(ok=False, outcome="ERROR", err="reserve: boom"))

    s = stats.summary()
    assert s["total"] == 5
    assert s["ok"] == 4
    assert (s["paid"], s["failed"], s["sold_out"], s["error"]) == (2, 1, 1, 1)
    assert s["tickets_paid"] == 3
    assert s["p50_s"] == 0.2
    assert abs(s["avg_s"] - 0.2) < 1e-9


def test_empty_summary():
    s = Stats().summary()
    assert s["total"] == 0
    assert s["p99_s"] == 0.0


def test_oversell_check():
    assert check_no_oversell(
        {"capacity": 5, "available": 1, "reserved": 2, "sold": 2}
    )
    assert not check_no_oversell(
        {"capacity": 5, "available": 0, "reserved": 3, "sold": 3}
    )
