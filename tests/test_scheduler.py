from __future__ import annotations

from shellpilot.agent.scheduler import Scheduler


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


def test_timer_fires_only_after_delay() -> None:
    clock = FakeClock()
    scheduler = Scheduler(clock=clock)
    fired: list[str] = []

    scheduler.schedule("s1", 2.0, lambda: fired.append("retry"))
    clock.now = 1.9
    assert scheduler.run_due() == 0

    clock.now = 2.0
    assert scheduler.run_due() == 1
    assert fired == ["retry"]
    assert scheduler.pending("s1") is False


def test_rescheduling_replaces_existing_timer() -> None:
    clock = FakeClock()
    scheduler = Scheduler(clock=clock)
    fired: list[str] = []

    scheduler.schedule("s1", 1.0, lambda: fired.append("first"))
    scheduler.schedule("s1", 3.0, lambda: fired.append("second"))
    clock.now = 5.0
    scheduler.run_due()

    assert fired == ["second"]


def test_cancel_prevents_callback() -> None:
    clock = FakeClock()
    scheduler = Scheduler(clock=clock)
    fired: list[str] = []

    scheduler.schedule("s1", 1.0, lambda: fired.append("retry"))

    assert scheduler.cancel("s1") is True
    assert scheduler.cancel("s1") is False
    clock.now = 10.0
    assert scheduler.run_due() == 0
    assert fired == []


def test_due_timers_run_in_deadline_order() -> None:
    clock = FakeClock()
    scheduler = Scheduler(clock=clock)
    fired: list[str] = []

    scheduler.schedule("late", 2.0, lambda: fired.append("late"))
    scheduler.schedule("early", 1.0, lambda: fired.append("early"))
    clock.now = 3.0
    scheduler.run_due()

    assert fired == ["early", "late"]


def test_callback_may_schedule_again() -> None:
    clock = FakeClock()
    scheduler = Scheduler(clock=clock)
    fired: list[float] = []

    def again() -> None:
        fired.append(clock.now)
        if len(fired) < 2:
            scheduler.schedule("s1", 1.0, again)

    scheduler.schedule("s1", 1.0, again)
    while scheduler.next_deadline() is not None:
        scheduler.wait_and_run(sleep=clock.sleep)

    assert fired == [1.0, 2.0]


def test_wait_and_run_without_timers_does_nothing() -> None:
    scheduler = Scheduler(clock=FakeClock())

    assert scheduler.next_deadline() is None
    assert scheduler.wait_and_run(sleep=lambda _s: None) == 0
