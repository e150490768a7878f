"""Raw YOLO tensor decoding: orientation, channel layouts, box scale."""
import numpy as np
import pytest

from conftest import yolo_output
from posedet.decoder import decode_outputs, normalize_box_scale, score_rows, sigmoid
from posedet.errors import MalformedModelOutputError


BOXES = [
    (320, 320, 200, 300, 0, 0.9),
    (100, 120, 50, 80, 2, 0.7),
]


class TestOrientation:

    def test_transposed_and_row_major_decode_identically(self):
        t = yolo_output(BOXES, n=8400, transposed=True)
        r = yolo_output(BOXES, n=8400, transposed=False)
        assert t.shape == (1, 84, 8400)
        assert r.shape == (1, 8400, 84)
        dt = decode_outputs([t])
        dr = decode_outputs([r])
        assert dt.shape == (8400, 84)
        np.testing.assert_array_equal(dt, dr)
        for a, b in zip(score_rows(dt), score_rows(dr)):
            np.testing.assert_array_equal(a, b)

    def test_accepts_rank2(self):
        t = yolo_output(BOXES, n=100)[0]
        assert decode_outputs([t]).shape == (100, 84)

    def test_concatenates_multiple_tensors(self):
        a = yolo_output(BOXES, n=300, transposed=True)
        b = yolo_output(BOXES, n=200, transposed=False)
        assert decode_outputs([a, b]).shape == (500, 84)


class TestShapeErrors:

    def test_too_few_channels(self):
        with pytest.raises(MalformedModelOutputError, match="Unexpected output shape"):
            decode_outputs([np.zeros((1, 100, 6), dtype=np.float32)])

    def test_no_rows(self):
        with pytest.raises(MalformedModelOutputError):
            decode_outputs([np.zeros((1, 0, 84), dtype=np.float32)])

    def test_no_tensors(self):
        with pytest.raises(MalformedModelOutputError):
            decode_outputs([])

    def test_bad_rank(self):
        with pytest.raises(MalformedModelOutputError, match="rank"):
            decode_outputs([np.zeros((1, 1, 84, 10), dtype=np.float32)])

    def test_bad_batch(self):
        with pytest.raises(MalformedModelOutputError, match="batch"):
            decode_outputs([np.zeros((2, 10, 84), dtype=np.float32)])

    def test_mixed_channels(self):
        with pytest.raises(MalformedModelOutputError):
            decode_outputs([np.zeros((1, 10, 84)), np.zeros((1, 10, 85))])


class TestScoring:

    def test_84_channel_max_class(self):
        rows = decode_outputs([yolo_output(BOXES, n=100)])
        scores, cls, xywh = score_rows(rows)
        assert cls[0] == 0 and scores[0] == pytest.approx(0.9, abs=1e-5)
        assert cls[1] == 2 and scores[1] == pytest.approx(0.7, abs=1e-5)
        assert scores[2] < 1e-6
        np.testing.assert_allclose(xywh[0], [320, 320, 200, 300])

    def test_85_channel_objectness_times_class(self):
        rows = decode_outputs([yolo_output(BOXES, n=100, channels=85, objectness=0.95)])
        assert rows.shape[1] == 85
        scores, cls, _ = score_rows(rows)
        assert cls[0] == 0
        assert scores[0] == pytest.approx(0.9, abs=1e-4)
        assert cls[1] == 2
        assert scores[1] == pytest.approx(0.7, abs=1e-4)

    def test_objectness_not_counted_as_class(self):
        rows = np.full((1, 85), -20.0)
        rows[0, 4] = 10.0  # objectness
        rows[0, 5 + 3] = 2.0
        scores, cls, _ = score_rows(rows)
        assert cls[0] == 3
        assert scores[0] == pytest.approx(sigmoid(10.0) * sigmoid(2.0))

    def test_sigmoid_is_stable(self):
        assert sigmoid(np.array([-1e4, 1e4])).tolist() == pytest.approx([0.0, 1.0])


class TestBoxScale:

    def test_normalized_boxes_are_scaled(self):
        xywh = np.array([[0.5, 0.5, 0.25, 0.5], [0.1, 0.2, 0.1, 0.1]])
        out = normalize_box_scale(xywh, 640, 480)
        np.testing.assert_allclose(out[0], [320, 240, 160, 240])

    def test_pixel_boxes_untouched(self):
        xywh = np.array([[320, 320, 200, 300], [10, 10, 1.5, 3]])
        np.testing.assert_array_equal(normalize_box_scale(xywh, 640, 640), xywh)

    def test_median_decides(self):
        # two normalized widths outvote one pixel width
        xywh = np.array([[0.5, 0.5, 0.2, 0.2], [0.5, 0.5, 0.3, 0.3], [100, 100, 50, 50]])
        out = normalize_box_scale(xywh, 100, 100)
        assert out[0, 2] == pytest.approx(20.0)
