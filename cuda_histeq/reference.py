"""Serial host implementations of every stage, used to validate device results."""
import numpy as np


def bin_indices(pixels, num_bins, max_value):
    values = np.asarray(pixels).astype(np.int64)
    levels = max_value + 1
    if num_bins == levels:
        return values
    return (values * num_bins) // levels


def histogram(pixels, num_bins, max_value):
    bins = bin_indices(np.ravel(pixels), num_bins, max_value)
    return np.bincount(bins, minlength=num_bins).astype(np.int32)


def cumulative(hist):
    """Left-to-right running sum."""
    out = np.empty(len(hist), dtype=np.int64)
    total = 0
    for i, count in enumerate(hist):
        total += int(count)
        out[i] = total
    return out.astype(np.int32)


def lookup_table(cum_hist, total_pixels, max_value):
    cum = np.asarray(cum_hist, dtype=np.int64)
    return ((2 * cum * max_value + total_pixels) // (2 * total_pixels)).astype(np.int32)


def apply(pixels, lut, num_bins, max_value):
    pixels = np.asarray(pixels)
    return np.asarray(lut)[bin_indices(pixels, num_bins, max_value)].astype(pixels.dtype)


def equalize(pixels, num_bins, max_value):
    """Whole single-channel equalization on the host."""
    total = int(np.asarray(pixels).size)
    cum = cumulative(histogram(pixels, num_bins, max_value))
    return apply(pixels, lookup_table(cum, total, max_value), num_bins, max_value)
