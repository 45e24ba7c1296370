"""
Compute kernels for histogram equalization.

The entry points are plain Python functions; ``DeviceSession`` compiles them
with ``numba.cuda.jit`` against the pixel type of the run, so the same source
serves 8-bit and 16-bit images. All device buffers are flat 1D arrays.
"""
import numpy as np
from numba import cuda

# Largest histogram either scan can hold in shared memory (one work-group).
SCAN_SPAN = 4096

# Per-group private histogram size used by calculate_histogram.
SHARED_BINS = 4096

ENTRY_POINTS = (
    "calculate_histogram",
    "scan_work_efficient",
    "scan_step_doubling",
    "normalize_lut",
    "apply_lut",
)


def signatures(pixel_type):
    """Explicit compile signatures for one pixel storage width."""
    return {
        "calculate_histogram": f"void({pixel_type}[::1], int32[::1], int64, int64, int64)",
        "scan_work_efficient": "void(int32[::1], int32[::1], int64)",
        "scan_step_doubling": "void(int32[::1], int32[::1], int64)",
        "normalize_lut": "void(int32[::1], int32[::1], int64, int64, int64)",
        "apply_lut": f"void({pixel_type}[::1], int32[::1], {pixel_type}[::1], int64, int64, int64)",
    }


# ------------------------ Device functions ------------------------

@cuda.jit(device=True)
def bin_index(value, num_bins, max_value):
    levels = max_value + 1
    if num_bins == levels:
        return value
    # Down-sampled bins
    return (value * num_bins) // levels


# ------------------------ Kernels ------------------------

def calculate_histogram(pixels, hist, total_pixels, num_bins, max_value):
    local_hist = cuda.shared.array(SHARED_BINS, dtype=np.int32)

    tid = cuda.threadIdx.x
    group = cuda.blockDim.x
    gid = cuda.grid(1)
    private = num_bins <= SHARED_BINS

    if private:
        b = tid
        while b < num_bins:
            local_hist[b] = 0
            b += group

    cuda.syncthreads()

    # Lanes of the final partial group past the last pixel add nothing
    if gid < total_pixels:
        index = bin_index(int(pixels[gid]), num_bins, max_value)
        if private:
            cuda.atomic.add(local_hist, index, 1)
        else:
            cuda.atomic.add(hist, index, 1)

    cuda.syncthreads()

    # Flush the group's counts to global memory
    if private:
        b = tid
        while b < num_bins:
            count = local_hist[b]
            if count > 0:
                cuda.atomic.add(hist, b, count)
            b += group


def scan_work_efficient(hist, cum_hist, num_bins):
    temp = cuda.shared.array(SCAN_SPAN, dtype=np.int32)

    tid = cuda.threadIdx.x
    group = cuda.blockDim.x

    padded = 1
    while padded < num_bins:
        padded *= 2

    # Zero padding up to the next power of two
    i = tid
    while i < padded:
        if i < num_bins:
            temp[i] = hist[i]
        else:
            temp[i] = 0
        i += group

    cuda.syncthreads()

    # Up-sweep: build partial sums in place
    stride = 1
    while stride < padded:
        k = tid
        while k < padded // (2 * stride):
            index = (k + 1) * stride * 2 - 1
            temp[index] += temp[index - stride]
            k += group
        cuda.syncthreads()
        stride *= 2

    # Down-sweep: push partial sums to the elements between them
    stride = padded // 4
    while stride > 0:
        k = tid
        while (k + 1) * stride * 2 - 1 + stride < padded:
            index = (k + 1) * stride * 2 - 1
            temp[index + stride] += temp[index]
            k += group
        cuda.syncthreads()
        stride //= 2

    i = tid
    while i < num_bins:
        cum_hist[i] = temp[i]
        i += group


def scan_step_doubling(hist, hs_hist, num_bins):
    buf = cuda.shared.array((2, SCAN_SPAN), dtype=np.int32)

    tid = cuda.threadIdx.x
    group = cuda.blockDim.x

    i = tid
    while i < num_bins:
        buf[0, i] = hist[i]
        i += group

    cuda.syncthreads()

    src = 0
    offset = 1
    while offset < num_bins:
        dst = 1 - src
        i = tid
        while i < num_bins:
            value = buf[src, i]
            if i >= offset:
                value += buf[src, i - offset]
            buf[dst, i] = value
            i += group
        cuda.syncthreads()
        src = dst
        offset *= 2

    i = tid
    while i < num_bins:
        hs_hist[i] = buf[src, i]
        i += group


def normalize_lut(cum_hist, lut, total_pixels, num_bins, max_value):
    i = cuda.grid(1)
    if i < num_bins:
        # round(cum / total * max_value), half up, in integers
        lut[i] = (2 * int(cum_hist[i]) * max_value + total_pixels) // (2 * total_pixels)


def apply_lut(pixels, lut, output, total_pixels, num_bins, max_value):
    gid = cuda.grid(1)
    if gid < total_pixels:
        index = bin_index(int(pixels[gid]), num_bins, max_value)
        output[gid] = lut[index]
