from __future__ import annotations

from datetime import timezone
from typing import Iterable, List, Optional, Tuple

import numpy as np
import pytest

from analysis.motion import (
    MotionRegion,
    MotionSignal,
    MotionStateMachine,
    Phase,
    PhaseClock,
    Rect,
    WatchConfig,
    advance,
)
from record.recorder import RecorderConfig, session_factory

YES = MotionSignal(present=True, regions=(MotionRegion(Rect(0, 0, 80, 60), 4800.0),))
NO = MotionSignal(present=False)
IMG = np.zeros((48, 64, 3), dtype=np.uint8)


def _machine(sink, tmp_path, **cfg) -> MotionStateMachine:
    rec_cfg = RecorderConfig(out_dir=tmp_path, async_close=False)
    return MotionStateMachine(
        config=WatchConfig(**cfg),
        open_session=session_factory(sink, rec_cfg, closer=None, tz=timezone.utc),
    )


def _drive(m: MotionStateMachine, script: Iterable[Tuple[float, bool]]) -> List[Tuple[float, Phase]]:
    """Feed (t_ms, present) pairs the way the watcher does; return the phase after each."""
    out = []
    for t_ms, present in script:
        d = m.step(YES if present else NO, t_ms, 64, 48)
        if d.append:
            d = m.record(IMG, t_ms)
        out.append((t_ms, d.phase))
    return out


def _ticks(start_ms: float, stop_ms: float, present: bool, tick_ms: float = 200.0):
    t = start_ms
    while t < stop_ms:
        yield t, present
        t += tick_ms


# --------------------------------------------------------------------------- #
# advance(): one test per row of the transition table
# --------------------------------------------------------------------------- #


def _clock(phase_started: float = 0.0, last_motion: Optional[float] = None) -> PhaseClock:
    clk = PhaseClock(phase_started)
    if last_motion is not None:
        clk.observe_motion(last_motion)
    return clk


def test_watching_stays_without_motion():
    d = advance(Phase.WATCHING, NO, _clock(), 100.0, WatchConfig())
    assert d.phase is Phase.WATCHING
    assert not (d.open_session or d.append or d.close_session)
    assert not d.transitioned


def test_watching_to_confirming_on_motion():
    d = advance(Phase.WATCHING, YES, _clock(last_motion=100.0), 100.0, WatchConfig())
    assert d.phase is Phase.CONFIRMING
    assert d.transitioned
    assert not d.open_session


def test_confirming_drops_back_without_motion():
    d = advance(Phase.CONFIRMING, NO, _clock(0.0, 1000.0), 1200.0, WatchConfig())
    assert d.phase is Phase.WATCHING
    assert not d.close_session


def test_confirming_holds_until_threshold_is_exceeded():
    cfg = WatchConfig(confirm_ms=2000)
    d = advance(Phase.CONFIRMING, YES, _clock(0.0, 2000.0), 2000.0, cfg)
    assert d.phase is Phase.CONFIRMING


def test_confirming_to_recording_past_threshold():
    cfg = WatchConfig(confirm_ms=2000)
    d = advance(Phase.CONFIRMING, YES, _clock(0.0, 2001.0), 2001.0, cfg)
    assert d.phase is Phase.RECORDING
    assert d.open_session and d.append


@pytest.mark.parametrize("present", [True, False])
def test_recording_continues_within_dropoff(present):
    cfg = WatchConfig(dropoff_ms=2000)
    d = advance(Phase.RECORDING, YES if present else NO, _clock(0.0, 3000.0), 5000.0, cfg)
    assert d.phase is Phase.RECORDING
    assert d.append
    assert not d.close_session


def test_recording_ends_past_dropoff():
    cfg = WatchConfig(dropoff_ms=2000)
    d = advance(Phase.RECORDING, NO, _clock(0.0, 3000.0), 5000.1, cfg)
    assert d.phase is Phase.WATCHING
    assert d.close_session
    assert not d.append


# --------------------------------------------------------------------------- #
# MotionStateMachine scenarios
# --------------------------------------------------------------------------- #


def test_all_quiet_input_never_leaves_watching(fake_sink, tmp_path):
    sink = fake_sink()
    m = _machine(sink, tmp_path)
    phases = _drive(m, _ticks(0, 20_000, False))
    assert {p for _, p in phases} == {Phase.WATCHING}
    assert m.last_decision is not None and not m.last_decision.transitioned
    assert sink.opened == [] and sink.written == []
    assert m.config.label_for(m.phase) == "Watching"


def test_brief_gap_does_not_end_recording(fake_sink, tmp_path):
    sink = fake_sink()
    m = _machine(sink, tmp_path, confirm_ms=2000, dropoff_ms=2000)
    script = list(_ticks(0, 3000, True)) + list(_ticks(3000, 4000, False)) + list(
        _ticks(4000, 5000, True)
    )
    phases = dict(_drive(m, script))

    assert phases[2000.0] is Phase.CONFIRMING
    assert phases[2200.0] is Phase.RECORDING
    assert all(phases[t] is Phase.RECORDING for t in phases if t >= 2200.0)
    assert m.phase is Phase.RECORDING
    assert len(sink.opened) == 1
    assert sink.closed == []


def test_long_gap_ends_recording_once(fake_sink, tmp_path):
    sink = fake_sink()
    m = _machine(sink, tmp_path, confirm_ms=2000, dropoff_ms=2000)
    script = list(_ticks(0, 3000, True)) + list(_ticks(3000, 6000, False))
    phases = dict(_drive(m, script))

    assert phases[2200.0] is Phase.RECORDING
    assert phases[4800.0] is Phase.RECORDING
    assert phases[5000.0] is Phase.WATCHING
    assert m.phase is Phase.WATCHING
    assert len(sink.opened) == 1
    assert sink.closed == [1]
    assert m.sessions_opened == 1 and m.sessions_closed == 1


def test_recording_writes_every_recording_cycle(fake_sink, tmp_path):
    sink = fake_sink()
    m = _machine(sink, tmp_path)
    phases = _drive(m, list(_ticks(0, 3000, True)) + list(_ticks(3000, 6000, False)))
    recording_cycles = [t for t, p in phases if p is Phase.RECORDING]
    assert len(sink.written) == len(recording_cycles)


def test_motion_seen_while_confirming_counts_toward_dropoff(fake_sink, tmp_path):
    m = _machine(fake_sink(), tmp_path, confirm_ms=0, dropoff_ms=500)
    m.step(YES, 0.0)
    assert m.phase is Phase.CONFIRMING
    assert m.clock.last_motion_ms == 0.0
    m.step(YES, 100.0)
    assert m.phase is Phase.RECORDING
    assert m.clock.last_motion_ms == 100.0


def test_zero_dropoff_stops_when_motion_stops(fake_sink, tmp_path):
    sink = fake_sink()
    m = _machine(sink, tmp_path, confirm_ms=0, dropoff_ms=0)
    phases = _drive(m, [(0.0, True), (200.0, True), (400.0, True), (600.0, False)])
    assert [p for _, p in phases] == [
        Phase.CONFIRMING,
        Phase.RECORDING,
        Phase.RECORDING,
        Phase.WATCHING,
    ]
    assert sink.closed == [1]


def test_gap_while_confirming_restarts_confirmation(fake_sink, tmp_path):
    m = _machine(fake_sink(), tmp_path, confirm_ms=1000)
    script = list(_ticks(0, 800, True)) + [(800.0, False)] + list(_ticks(1000, 2000, True))
    phases = dict(_drive(m, script))
    assert phases[800.0] is Phase.WATCHING
    assert phases[1000.0] is Phase.CONFIRMING
    # Confirmation restarted at 1000 ms, so 1800 ms is still inside it.
    assert phases[1800.0] is Phase.CONFIRMING


def test_write_failure_forces_watching_and_closes(fake_sink, tmp_path):
    sink = fake_sink(fail_write_at=3)
    m = _machine(sink, tmp_path, confirm_ms=0, dropoff_ms=2000)
    m.step(YES, 0.0)

    results = []
    for t in (100.0, 200.0, 300.0):
        d = m.step(YES, t, 64, 48)
        if d.append:
            d = m.record(IMG, t)
        results.append(d)

    failed = results[-1]
    assert failed.write_failed
    assert failed.phase is Phase.WATCHING
    assert m.phase is Phase.WATCHING
    assert m.session is None
    assert sink.closed == [1]
    assert m.write_failures == 1

    # The watcher keeps going: fresh motion starts a new confirmation.
    assert m.step(YES, 400.0).phase is Phase.CONFIRMING


def test_sink_unavailable_falls_back_to_watching(fake_sink, tmp_path):
    sink = fake_sink(fail_open=True)
    m = _machine(sink, tmp_path, confirm_ms=0)
    m.step(YES, 0.0)
    d = m.step(YES, 100.0, 64, 48)

    assert d.sink_failed
    assert d.phase is Phase.WATCHING
    assert not d.append
    assert m.phase is Phase.WATCHING
    assert m.session is None
    assert m.sink_failures == 1


def test_at_most_one_session_open(fake_sink, tmp_path):
    sink = fake_sink()
    m = _machine(sink, tmp_path, confirm_ms=0, dropoff_ms=0)
    script = []
    t = 0.0
    for _ in range(4):
        for present in (True, True, True, False):
            script.append((t, present))
            t += 100.0
    _drive(m, script)
    assert len(sink.opened) == 4
    assert sink.closed == [1, 2, 3, 4]


def test_second_open_while_recording_is_refused(fake_sink, tmp_path):
    sink = fake_sink()
    m = _machine(sink, tmp_path, confirm_ms=0)
    _drive(m, [(0.0, True), (100.0, True)])
    assert m.session is not None and m.session.is_open

    with pytest.raises(RuntimeError):
        m._start_session(200.0, 64, 48)
    assert len(sink.opened) == 1
    assert m.session.is_open


def test_shutdown_closes_open_session(fake_sink, tmp_path):
    sink = fake_sink()
    m = _machine(sink, tmp_path, confirm_ms=0)
    _drive(m, [(0.0, True), (100.0, True)])
    assert m.session is not None and m.session.is_open
    m.shutdown()
    m.shutdown()
    assert sink.closed == [1]


def test_without_session_factory_phases_still_advance():
    m = MotionStateMachine(config=WatchConfig(confirm_ms=0))
    m.step(YES, 0.0)
    d = m.step(YES, 10.0)
    assert d.phase is Phase.RECORDING
    assert m.record(IMG, 10.0) is d
    assert m.session is None


def test_record_requires_append_decision():
    m = MotionStateMachine()
    m.step(NO, 0.0)
    with pytest.raises(RuntimeError):
        m.record(IMG, 0.0)


def test_watch_config_rejects_negative_thresholds():
    with pytest.raises(ValueError):
        WatchConfig(dropoff_ms=-1)


def test_colors_follow_phase_and_motion():
    cfg = WatchConfig()
    assert cfg.color_for(Phase.WATCHING, False) == cfg.watching_color
    assert cfg.color_for(Phase.CONFIRMING, True) == cfg.confirming_color
    assert cfg.color_for(Phase.RECORDING, True) == cfg.recording_color
    assert cfg.color_for(Phase.RECORDING, False) == cfg.recording_idle_color
    assert cfg.tick_for(Phase.RECORDING) == cfg.recording_tick_ms
    assert cfg.tick_for(Phase.CONFIRMING) == cfg.tick_ms
