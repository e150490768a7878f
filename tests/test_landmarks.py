import threading
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from conftest import ConcurrencyProbe, landmark_outputs, logit
from posedet.errors import InvalidStateError, MalformedModelOutputError
from posedet.landmarks import LandmarkRunner, _locate_outputs, decode_landmarks
from posedet.types import LandmarkType


def _crop(value, size=256):
    return np.full((size, size, 3), value, dtype=np.uint8)


def echo_fill(inputs):
    """Landmark x/y echo the crop's fill value, so results can be traced to crops."""
    v = float(inputs[0][0, 0, 0, 0])
    return landmark_outputs(xy=(v * 256.0, v * 256.0))


class TestDecode:

    def test_values(self):
        raw = np.zeros((39, 5), dtype=np.float32)
        raw[:, 0] = 128.0
        raw[:, 1] = 64.0
        raw[:, 2] = -12.5
        raw[:, 3] = 5.0
        raw[:, 4] = 5.0
        raw[0, 0] = 300.0
        raw[1, 0] = -5.0
        raw[2, 1] = np.nan
        result = decode_landmarks(raw.reshape(-1), [logit(0.9)])

        assert len(result.landmarks) == 33
        assert result.score == pytest.approx(0.9)
        assert [lm.type for lm in result.landmarks] == list(LandmarkType)
        nose, eye_inner, eye = result.landmarks[0], result.landmarks[1], result.landmarks[2]
        assert nose.x == 1.0
        assert eye_inner.x == 0.0
        assert eye.y == 0.0
        lm = result.landmarks[10]
        assert lm.x == pytest.approx(0.5)
        assert lm.y == pytest.approx(0.25)
        assert lm.z == pytest.approx(-12.5)
        sig5 = 1.0 / (1.0 + np.exp(-5.0))
        assert lm.visibility == pytest.approx(sig5 * sig5)

    def test_accepts_33_row_export(self):
        result = decode_landmarks(np.zeros(165), np.zeros(1))
        assert len(result.landmarks) == 33
        assert result.score == pytest.approx(0.5)

    def test_short_tensor(self):
        with pytest.raises(MalformedModelOutputError):
            decode_landmarks(np.zeros(100), np.zeros(1))

    def test_empty_score(self):
        with pytest.raises(MalformedModelOutputError):
            decode_landmarks(np.zeros(195), np.zeros(0))


def test_locate_outputs_by_size():
    outs = [np.zeros((1, 1)), np.zeros((1, 256, 256, 1)), np.zeros((1, 195))]
    assert _locate_outputs(outs) == (2, 0)


class TestRunner:

    def test_run_single(self, make_runner):
        runner, engines = make_runner(responder=echo_fill)
        result = runner.run(_crop(255))
        assert result.score == pytest.approx(0.9, abs=1e-5)
        assert result.landmarks[0].x == pytest.approx(1.0)
        assert engines[0].calls == 1

    def test_resizes_off_size_crops(self, make_runner):
        runner, _ = make_runner(responder=echo_fill)
        result = runner.run(np.full((120, 60, 3), 51, dtype=np.uint8))
        assert result.landmarks[0].x == pytest.approx(51 / 255, abs=1e-4)

    def test_pool_size_is_clamped(self):
        assert LandmarkRunner(lambda: None, pool_size=50).pool_size == 10
        assert LandmarkRunner(lambda: None, pool_size=0).pool_size == 1

    def test_not_initialized(self):
        runner = LandmarkRunner(lambda: None, pool_size=2)
        with pytest.raises(InvalidStateError):
            runner.run(_crop(0))
        with pytest.raises(InvalidStateError):
            runner.run_batch([_crop(0)])

    def test_dispose_closes_every_engine(self, make_runner):
        runner, engines = make_runner(pool_size=3)
        assert len(engines) == 3
        runner.dispose()
        assert all(e.closed for e in engines)
        assert not runner.is_initialized

    def test_round_robin(self, make_runner):
        runner, engines = make_runner(pool_size=3)
        for _ in range(7):
            runner.run(_crop(0))
        assert [e.calls for e in engines] == [3, 2, 2]


class TestBatch:

    def test_results_follow_input_order(self, make_runner):
        runner, _ = make_runner(responder=echo_fill, pool_size=3, delay=0.01)
        values = [10, 200, 30, 150, 90, 250, 5]
        results = runner.run_batch([_crop(v) for v in values])
        assert len(results) == len(values)
        for v, r in zip(values, results):
            assert r.landmarks[0].x == pytest.approx(v / 255, abs=1e-4)

    def test_five_calls_on_two_slots(self, make_runner):
        probe = ConcurrencyProbe()
        runner, engines = make_runner(responder=echo_fill, pool_size=2, delay=0.02, probe=probe)
        values = [20, 180, 60, 240, 100]
        results = runner.run_batch([_crop(v) for v in values])
        for v, r in zip(values, results):
            assert r.landmarks[0].x == pytest.approx(v / 255, abs=1e-4)
        assert probe.max_active <= 2
        assert all(e.max_active <= 1 for e in engines)
        assert [e.calls for e in engines] == [3, 2]

    def test_direct_callers_share_slots_safely(self, make_runner):
        probe = ConcurrencyProbe()
        runner, engines = make_runner(responder=echo_fill, pool_size=2, delay=0.02, probe=probe)
        values = [15, 75, 135, 195, 255]
        with ThreadPoolExecutor(max_workers=5) as ex:
            results = list(ex.map(runner.run, [_crop(v) for v in values]))
        for v, r in zip(values, results):
            assert r.landmarks[0].x == pytest.approx(v / 255, abs=1e-4)
        assert probe.max_active <= 2
        assert all(e.max_active <= 1 for e in engines)

    def test_failed_crop_becomes_none(self, make_runner):
        def responder(inputs):
            if inputs[0][0, 0, 0, 0] > 0.7:
                raise RuntimeError("bad crop")
            return echo_fill(inputs)

        runner, _ = make_runner(responder=responder, pool_size=2)
        results = runner.run_batch([_crop(10), _crop(230), _crop(40)])
        assert results[1] is None
        assert results[0].landmarks[0].x == pytest.approx(10 / 255, abs=1e-4)
        assert results[2].landmarks[0].x == pytest.approx(40 / 255, abs=1e-4)

    def test_cancelled_batch_skips_work(self, make_runner):
        runner, engines = make_runner(pool_size=2)
        cancel = threading.Event()
        cancel.set()
        assert runner.run_batch([_crop(0), _crop(1)], cancel=cancel) == [None, None]
        assert sum(e.calls for e in engines) == 0

    def test_empty_batch(self, make_runner):
        runner, _ = make_runner()
        assert runner.run_batch([]) == []
