import numpy as np
import pytest

from tilescale.engine.resample import align, downsample, upsample


def test_upsample_makes_blocks():
    tensor = np.array([[1, 2], [3, 4]], dtype=np.uint8)[:, :, np.newaxis]

    out = upsample(tensor, 2)

    assert out.shape == (4, 4, 1)
    assert (out[0:2, 0:2] == 1).all()
    assert (out[2:4, 2:4] == 4).all()


def test_downsample_keeps_top_left():
    tensor = np.arange(16, dtype=np.uint8).reshape(4, 4, 1)

    out = downsample(tensor, 2)

    assert out[:, :, 0].tolist() == [[0, 2], [8, 10]]


@pytest.mark.parametrize("factor", [2, 4])
def test_alignment_round_trip_preserves_size(gradient, factor):
    tensor = gradient(13, 7, channels=3)
    scaled = upsample(tensor, factor)

    aligned = upsample(downsample(scaled, factor), factor)

    assert aligned.shape == scaled.shape
    assert np.array_equal(aligned, scaled)


def test_align_snaps_shifted_blocks_to_grid():
    blocks = upsample(np.array([[10, 20, 30]], dtype=np.uint8)[:, :, np.newaxis], 2)
    # Blocks start one pixel off the even grid
    shifted = np.concatenate([blocks[:, :1], blocks[:, :5]], axis=1)
    assert shifted[0, :, 0].tolist() == [10, 10, 10, 20, 20, 30]

    out = align(shifted, 2)

    assert out.shape == shifted.shape
    assert out[0, :, 0].tolist() == [10, 10, 10, 10, 20, 20]
    assert out[1, :, 0].tolist() == [10, 10, 10, 10, 20, 20]


def test_align_rejects_sizes_off_the_factor(gradient):
    with pytest.raises(ValueError):
        align(gradient(5, 4), 2)
