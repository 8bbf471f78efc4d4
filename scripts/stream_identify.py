#!/usr/bin/env python3
"""
Live microphone view: raw STFT spectrogram plus Top-K bird predictions.

USAGE EXAMPLES:
  # List available audio input devices
  python scripts/stream_identify.py --list-devices

  # Default device, model from artifacts/
  python scripts/stream_identify.py --artifacts_dir artifacts

  # Pick a microphone by substring and refresh faster
  python scripts/stream_identify.py --device "USB" --hop_sec 0.5

TIPS
- The spectrogram panel shows raw per-bin magnitudes (no mel step), in dB
- Predictions use the same pipeline as predict.py on the last --win_sec seconds
"""

import argparse
import asyncio
import os
import sys
import time
from collections import deque

import matplotlib.pyplot as plt
import numpy as np
import sounddevice as sd

# Ensure local project modules resolve over any similarly named pip packages
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from transforms.spectral import compute_live_spectrogram
from utils.device import get_device
from utils.inference import InferenceService
from utils.logging import setup_logging


def list_devices():
    print("Available audio input devices:")
    print("=" * 80)
    for i, device in enumerate(sd.query_devices()):
        if device['max_input_channels'] > 0:
            print(f"  [{i}] {device['name']}")
            print(f"      Channels: {device['max_input_channels']}, "
                  f"Sample rate: {device['default_samplerate']} Hz")
    print("=" * 80)
    print("\nUse --device <index> or --device '<substring>' to select a device.")


def resolve_device(spec):
    if spec is None:
        return None
    try:
        return int(spec)
    except ValueError:
        matches = [i for i, d in enumerate(sd.query_devices()) if spec.lower() in d["name"].lower()]
        if not matches:
            raise RuntimeError(f"No input device matches substring: {spec!r}")
        return matches[0]


async def run(args):
    service = InferenceService(args.artifacts_dir, device=get_device())
    try:
        await service.load()
    except Exception as e:
        print(f"Model unavailable ({e}); showing the spectrogram only.")

    win_samples = int(args.win_sec * args.sr)
    ring = deque(maxlen=win_samples)

    # ---- Matplotlib UI ----
    plt.ion()
    fig = plt.figure(figsize=(12, 6))
    fig.subplots_adjust(bottom=0.22)
    ax_spec = fig.add_subplot(1, 2, 1)
    spec_im = ax_spec.imshow(np.zeros((args.window // 2 + 1, 10), dtype=np.float32),
                             aspect="auto", origin="lower", vmin=-80.0, vmax=0.0)
    ax_spec.set_title("Live Spectrogram (dB)")
    ax_spec.set_xlabel("Time (s)")
    ax_spec.set_ylabel("Frequency (Hz)")

    ax_bar = fig.add_subplot(1, 2, 2)
    bars = ax_bar.bar(range(args.topk), np.zeros(args.topk, dtype=np.float32))
    ax_bar.set_ylim(0.0, 1.0)
    ax_bar.set_xticks(range(args.topk))
    ax_bar.set_xticklabels([""] * args.topk, rotation=45, ha="right")
    title_txt = fig.suptitle("Listening…")

    def audio_callback(indata, frames, time_info, status):
        if status:
            print(status)
        mono = indata.mean(axis=1) if indata.shape[1] > 1 else indata[:, 0]
        ring.extend(mono.astype(np.float32).tolist())

    stream = sd.InputStream(
        callback=audio_callback,
        channels=1,
        samplerate=args.sr,
        device=resolve_device(args.device),
        dtype="float32",
    )

    print("Streaming… Press Ctrl+C to stop.")
    last = 0.0
    with stream:
        while plt.fignum_exists(fig.number):
            now = time.time()
            if now - last >= args.hop_sec and len(ring) >= args.window:
                last = now
                wav = np.asarray(ring, dtype=np.float32)

                live = compute_live_spectrogram(wav, args.sr, args.window, args.hop)
                mags = np.asarray(live.magnitudes, dtype=np.float32).T
                db = 20.0 * np.log10(np.maximum(mags, 1e-6) / max(float(mags.max()), 1e-6))
                spec_im.set_data(db)
                spec_im.set_extent((live.times[0], live.times[-1] + args.hop / args.sr,
                                    live.frequencies[0], live.frequencies[-1]))

                if service.status()["loaded"] and len(ring) >= win_samples:
                    result = await service.identify(wav, args.sr, top_k=args.topk)
                    if result.success and result.predictions:
                        for b, p in zip(bars, result.predictions):
                            b.set_height(p.confidence)
                        ax_bar.set_xticklabels([p.bird_name for p in result.predictions], rotation=45, ha="right")
                        top = result.predictions[0]
                        title_txt.set_text(f"Top-1: {top.bird_name} (p={top.confidence:.2f})")

                fig.canvas.draw_idle()
                plt.pause(0.001)
            await asyncio.sleep(0.01)


def main():
    ap = argparse.ArgumentParser(description="Live mic → spectrogram + bird predictions")
    ap.add_argument("--sr", type=int, default=22050, help="Microphone sample rate (Hz). [default: 22050]")
    ap.add_argument("--win_sec", type=float, default=3.0, help="Seconds of audio per prediction. [default: 3.0]")
    ap.add_argument("--hop_sec", type=float, default=1.0, help="Refresh interval (seconds). [default: 1.0]")
    ap.add_argument("--window", type=int, default=2048, help="STFT window for the display. [default: 2048]")
    ap.add_argument("--hop", type=int, default=512, help="STFT hop for the display. [default: 512]")
    ap.add_argument("--device", type=str, default=None, help="Microphone device index or name substring.")
    ap.add_argument("--list-devices", action="store_true", help="List audio input devices and exit.")
    ap.add_argument("--artifacts_dir", type=str, default="artifacts", help="Model folder. [default: artifacts]")
    ap.add_argument("--topk", type=int, default=5, help="How many predictions to show. [default: 5]")
    args = ap.parse_args()

    if args.list_devices:
        list_devices()
        return

    setup_logging()
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
