"""
Histogram charts drawn with OpenCV: the original histogram, the cumulative
histogram and the normalized LUT, each as a bar chart on a white canvas.
"""
import cv2
import numpy as np

HIST_HEIGHT = 200
MARGIN_TOP = 30
MARGIN_BOTTOM = 50
MARGIN_LEFT = 60

BLACK = (0, 0, 0)
RED = (0, 0, 255)
GRAY = (200, 200, 200)


def _canvas(width, axis_color):
    canvas = np.full((MARGIN_TOP + HIST_HEIGHT + MARGIN_BOTTOM, MARGIN_LEFT + width, 3), 255, dtype=np.uint8)
    base = MARGIN_TOP + HIST_HEIGHT
    cv2.line(canvas, (MARGIN_LEFT, MARGIN_TOP), (MARGIN_LEFT, base), axis_color)
    cv2.line(canvas, (MARGIN_LEFT, base), (MARGIN_LEFT + width, base), axis_color)
    return canvas


def _columns(values, width):
    """Resample ``values`` to one column per pixel of chart width (max per column)."""
    values = np.asarray(values, dtype=np.float64)
    if len(values) == width:
        return values
    edges = np.linspace(0, len(values), width + 1).astype(np.int64)
    return np.array([values[a:max(b, a + 1)].max() for a, b in zip(edges[:-1], edges[1:])])


def _bars(canvas, heights, color):
    base = MARGIN_TOP + HIST_HEIGHT
    for x, height in enumerate(heights):
        top = base - int(round(height))
        cv2.line(canvas, (MARGIN_LEFT + x, base), (MARGIN_LEFT + x, top), color)
    return canvas


def _label(canvas, text):
    cv2.putText(canvas, text, (MARGIN_LEFT, MARGIN_TOP - 10), cv2.FONT_HERSHEY_SIMPLEX, 0.4, BLACK, 1)
    return canvas


def histogram_chart(histogram, width=256, title="Histogram"):
    columns = _columns(histogram, width)
    peak = columns.max()
    heights = columns / peak * HIST_HEIGHT if peak > 0 else np.zeros_like(columns)
    return _label(_bars(_canvas(width, RED), heights, BLACK), title)


def cumulative_chart(cumulative, total_pixels, width=256, title="Cumulative Histogram"):
    heights = _columns(cumulative, width) / total_pixels * HIST_HEIGHT
    return _label(_bars(_canvas(width, BLACK), heights, BLACK), title)


def lut_chart(lut, max_value, width=256, title="Normalized Cumulative LUT"):
    heights = _columns(lut, width) * HIST_HEIGHT / max_value
    return _label(_bars(_canvas(width, BLACK), heights, GRAY), title)


def channel_charts(result, total_pixels, max_value):
    """All charts for one ``ChannelResult``, keyed by a file-name stem."""
    charts = {
        "histogram": histogram_chart(result.histogram),
        "cumulative": cumulative_chart(result.cumulative, total_pixels),
        "lut": lut_chart(result.lut, max_value),
    }
    if result.equalized_histogram is not None:
        charts["equalized_histogram"] = histogram_chart(result.equalized_histogram, title="Equalized Histogram")
    return charts
