from seatxfer.infra import timings


def test_access_line_is_truncated():
    assert timings.format_access_line("GET", "/api/user", 200, 4.6) == \
        "GET /api/user 200 in 5ms"
    line = timings.format_access_line("GET", "/api/" + "x" * 100, 404, 1)
    assert len(line) == 80
    assert line.endswith("…")


async def test_timeit_snapshot_and_reset():
    timings.reset()
    async with timings.timeit("unit.test"):
        pass
    async with timings.timeit("unit.test"):
        pass
    snap = timings.snapshot()
    assert snap["unit.test"]["n"] == 2
    assert snap["unit.test"]["mean_ms"] >= 0
    timings.reset()
    assert timings.snapshot() == {}


async def test_access_log_records_route_template(client):
    timings.reset()
    await client.post("/api/pending-tickets/42/confirm")
    assert "http.POST /api/pending-tickets/{pending_id}/confirm" in \
        timings.snapshot()
