"""
Command-line entry point.

Usage:
  cuda-histeq input.png output.png
  cuda-histeq input.tif output.tif --high-precision --bins 1024
  cuda-histeq photo.jpg out.jpg --color --save-plots plots/
  cuda-histeq --list-devices
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import cv2

from .config import DEVICE_TYPES, PipelineConfig
from .device import DeviceSession, list_devices
from .errors import EqualizationError
from .io import load_image, save_image
from .pipeline import Controller
from .plots import channel_charts

logger = logging.getLogger("cuda_histeq")


def parse_args(argv=None):
    p = argparse.ArgumentParser(prog="cuda-histeq", description="Histogram equalization on a CUDA device")
    p.add_argument("input", type=Path, nargs="?", help="Path to input image")
    p.add_argument("output", type=Path, nargs="?", help="Path for the equalized image")
    p.add_argument("--platform", type=int, default=None, help="Platform index (default 0)")
    p.add_argument("--device", type=int, default=None, help="Device index within the platform (default 0)")
    p.add_argument("--device-type", choices=DEVICE_TYPES, default=None, help="Preferred device class")
    p.add_argument("--bins", type=int, default=None, help="Number of histogram bins")
    p.add_argument("--color", action="store_true", help="Equalize every BGR channel instead of grayscale")
    p.add_argument("--high-precision", action="store_true", help="Process 16-bit samples")
    p.add_argument("--group-size", type=int, default=None, help="Work-group size for per-pixel kernels")
    p.add_argument("--no-cross-check", action="store_true", help="Skip the step-doubling scan cross-check")
    p.add_argument("--kernels", default=None, help="Dotted path of an alternative kernel module")
    p.add_argument("--save-plots", type=Path, default=None, metavar="DIR",
                   help="Write histogram, cumulative and LUT charts to DIR")
    p.add_argument("--keep-going", action="store_true", help="Continue with the next channel after a failure")
    p.add_argument("--list-devices", action="store_true", help="List available devices and exit")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = p.parse_args(argv)
    if not args.list_devices and (args.input is None or args.output is None):
        p.error("input and output paths are required")
    return args


def run(args) -> int:
    if args.list_devices:
        devices = list_devices()
        if not devices:
            print("No CUDA devices found")
            return 1
        for info in devices:
            print(info)
        return 0

    image = load_image(args.input, color=args.color, high_precision=args.high_precision)
    config = PipelineConfig.from_env(
        bit_depth=image.bit_depth,
        channel_count=image.channel_count,
        num_bins=args.bins,
        platform_index=args.platform,
        device_index=args.device,
        device_type=args.device_type,
        group_size=args.group_size,
        cross_check_scan=False if args.no_cross_check else None,
        kernel_module=args.kernels,
    )

    with DeviceSession(config) as session:
        controller = Controller(session, config, equalized_histogram=args.save_plots is not None)
        result = controller.equalize(image, fail_fast=not args.keep_going)

    save_image(args.output, result.image)

    if args.save_plots is not None:
        args.save_plots.mkdir(parents=True, exist_ok=True)
        for channel in result.channels:
            if not channel.ok:
                continue
            for stem, chart in channel_charts(channel, image.total_pixels, config.max_value).items():
                cv2.imwrite(str(args.save_plots / f"channel{channel.channel}_{stem}.png"), chart)
        logger.info(f"Charts saved to {args.save_plots}")

    for channel in result.channels:
        timings = ", ".join(f"{name} {seconds * 1000:.2f} ms" for name, seconds in channel.timings.items())
        logger.info(f"Channel {channel.channel}: {channel.state.value} ({timings})")

    return 0 if result.ok else 1


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)-25s - %(levelname)-8s - %(message)s",
        datefmt="%H:%M:%S",
    )
    try:
        return run(args)
    except EqualizationError as exc:
        logger.error(f"Error: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
