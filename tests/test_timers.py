from datetime import timedelta

from aimnet_methane_receiver.models import Reading
from aimnet_methane_receiver.sampling import SamplingState, TimedSamplingController
from aimnet_methane_receiver.timers import TimerKind, TimerTable

from conftest import START, FakeClock, ManualScheduler


class TimerRig:
    def __init__(self):
        self.clock = FakeClock()
        self.scheduler = ManualScheduler(self.clock)
        self.fired = []
        self.table = TimerTable(self.scheduler, self.on_fire)

    def on_fire(self, handle):
        resolved = self.table.resolve(handle)
        if resolved is not None:
            self.fired.append(resolved)


def test_one_shot_timer_fires_once_and_releases():
    rig = TimerRig()
    rig.table.arm(TimerKind.WARMUP, 5)
    rig.scheduler.advance(4)
    assert rig.fired == []

    rig.scheduler.advance(10)
    assert rig.fired == [(TimerKind.WARMUP, "")]
    assert not rig.table.is_armed(TimerKind.WARMUP)


def test_repeating_timer_reschedules():
    rig = TimerRig()
    rig.table.arm(TimerKind.WATCHDOG, 1, repeating=True)
    rig.scheduler.advance(3)
    assert rig.fired == [(TimerKind.WATCHDOG, "")] * 3
    assert rig.table.is_armed(TimerKind.WATCHDOG)


def test_rearm_makes_old_handle_stale():
    rig = TimerRig()
    old = rig.table.arm(TimerKind.READ_FALLBACK, 1, key="gas")
    new = rig.table.arm(TimerKind.READ_FALLBACK, 1, key="gas")

    assert old.slot == new.slot
    assert rig.table.resolve(old) is None
    assert rig.table.resolve(new) == (TimerKind.READ_FALLBACK, "gas")


def test_cancelled_handle_is_stale():
    rig = TimerRig()
    handle = rig.table.arm(TimerKind.BATTERY_RETRY, 10, key="SN-1")
    assert rig.table.cancel(TimerKind.BATTERY_RETRY, "SN-1")
    assert not rig.table.cancel(TimerKind.BATTERY_RETRY, "SN-1")

    assert rig.table.resolve(handle) is None
    rig.scheduler.advance(20)
    assert rig.fired == []


def test_stale_handle_survives_slot_reuse():
    rig = TimerRig()
    handle = rig.table.arm(TimerKind.WARMUP, 5)
    rig.table.cancel(TimerKind.WARMUP)
    reused = rig.table.arm(TimerKind.SAMPLE_COUNTDOWN, 1, repeating=True)

    assert reused.slot == handle.slot
    assert rig.table.resolve(handle) is None


def test_keys_are_independent():
    rig = TimerRig()
    rig.table.arm(TimerKind.READ_FALLBACK, 1, key="a", repeating=True)
    rig.table.arm(TimerKind.READ_FALLBACK, 1, key="b", repeating=True)
    rig.table.arm(TimerKind.WATCHDOG, 1, repeating=True)
    assert sorted(rig.table.keys(TimerKind.READ_FALLBACK)) == ["a", "b"]

    rig.table.cancel_kind(TimerKind.READ_FALLBACK)
    assert rig.table.armed_count == 1

    rig.table.cancel_all()
    assert rig.table.armed_count == 0
    assert rig.scheduler.pending == 0


def reading(ppm: float) -> Reading:
    return Reading(timestamp=START, raw_value=ppm, calibrated_value=ppm)


def test_sampling_countdown_completes():
    controller = TimedSamplingController()
    assert controller.start(START, 3) == 3
    controller.record(reading(100))
    controller.record(reading(300))

    assert controller.tick(START + timedelta(seconds=1)) is None
    assert controller.tick(START + timedelta(seconds=2)) is None
    sample = controller.tick(START + timedelta(seconds=3))

    assert controller.state == SamplingState.COMPLETED
    assert sample.average_ppm == 200
    assert sample.min_ppm == 100 and sample.max_ppm == 300
    assert sample.duration_seconds == 3
    assert controller.last_sample is sample
    assert not controller.record(reading(500))


def test_sampling_duration_is_clamped():
    controller = TimedSamplingController()
    assert controller.start(START, 0) == 1


def test_sampling_cancel_keeps_previous_result():
    controller = TimedSamplingController()
    controller.start(START, 1)
    controller.record(reading(10))
    first = controller.tick(START + timedelta(seconds=1))

    controller.start(START + timedelta(seconds=5), 10)
    controller.record(reading(99))
    assert controller.cancel()
    assert not controller.cancel()

    assert controller.state == SamplingState.CANCELLED
    assert controller.readings == ()
    assert controller.last_sample is first


def test_stop_early_and_empty_sample():
    controller = TimedSamplingController()
    assert controller.stop(START) is None

    controller.start(START, 30)
    sample = controller.stop(START + timedelta(seconds=2))
    assert sample.readings == ()
    assert sample.average_ppm == 0.0
    assert sample.target_duration_sec == 30


def test_sampling_buffer_is_bounded():
    controller = TimedSamplingController(capacity=2)
    controller.start(START, 5)
    for ppm in (1, 2, 3):
        controller.record(reading(ppm))
    assert [r.ppm for r in controller.readings] == [2, 3]
