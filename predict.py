"""
Identify the bird in a single audio file using a trained model.

Example:
  PYTHONPATH=. python predict.py \
    --artifacts_dir artifacts \
    --wav /path/to/recording.wav --topk 5 \
    --lat 52.1 --lon 5.2 --week 18
"""

import argparse
import asyncio
import json
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np

from transforms.audio import load_audio
from utils.class_map import create_class_mapping
from utils.device import get_device, get_device_name
from utils.inference import GeoContext, IdentificationResult, InferenceService
from utils.logging import setup_logging


# ------------------------------
# Output
# ------------------------------
def print_result(wav_path: Path, result: IdentificationResult) -> None:
    print(f"\n🎧 File: {wav_path.name}")
    if not result.success:
        print(f"Identification failed: {result.error}")
        return
    if result.demo:
        print("(demo mode: no trained model available, predictions are synthetic)")
    print(f"Top predictions ({result.processing_time_ms:.0f} ms):")
    for p in result.predictions:
        label = f"{p.bird_name} ({p.scientific_name})" if p.scientific_name else p.bird_name
        print(f"  {p.rank}. {label:<40} {p.confidence*100:5.2f}%")


def save_spectrogram(wav_path: Path, result: IdentificationResult, out_dir=None) -> None:
    if not result.spectrogram:
        return
    spec = np.asarray(result.spectrogram, dtype=np.float32).T  # [mels, frames]
    fig, ax = plt.subplots(figsize=(8, 4))
    im = ax.imshow(spec, origin="lower", aspect="auto")
    top = result.predictions[0].bird_name if result.predictions else "?"
    ax.set_title(f"Predicted: {top}")
    plt.xlabel("Time frames")
    plt.ylabel("Mel bins")
    plt.colorbar(im, ax=ax)
    plt.tight_layout()

    if out_dir:
        out_dir = Path(out_dir)
        out_dir.mkdir(exist_ok=True)
        out_file = out_dir / f"{wav_path.stem}_pred.png"
        plt.savefig(out_file)
        print(f"Saved spectrogram to {out_file}")
    else:
        plt.show()
    plt.close(fig)


# ------------------------------
# Main
# ------------------------------
def main():
    ap = argparse.ArgumentParser(description="Identify the bird species in an audio file")
    ap.add_argument("--wav", type=str, required=True, help="Path to the audio file")
    ap.add_argument("--artifacts_dir", type=str, default="artifacts")
    ap.add_argument("--topk", type=int, default=5)
    ap.add_argument("--lat", type=float, default=None, help="Recording latitude (enables the metadata model)")
    ap.add_argument("--lon", type=float, default=None, help="Recording longitude")
    ap.add_argument("--week", type=int, default=None, help="Week of the year, 1-48")
    ap.add_argument("--demo_classes", type=str, default=None,
                    help="JSON list of {id, name, scientific_name}; enables demo mode when no model is available")
    ap.add_argument("--out_dir", type=str, default="pred_artifacts")
    args = ap.parse_args()

    setup_logging()
    device = get_device()
    print(f"Using device: {get_device_name()} ({device})")

    fallback = None
    if args.demo_classes:
        with open(args.demo_classes, "r") as f:
            fallback = create_class_mapping(json.load(f))

    geo = None
    if args.lat is not None and args.lon is not None and args.week is not None:
        geo = GeoContext(lat=args.lat, lon=args.lon, week=args.week)

    service = InferenceService(args.artifacts_dir, device=device, fallback_classes=fallback)
    wav_path = Path(args.wav)
    audio, sr = load_audio(wav_path)
    result = asyncio.run(service.identify(audio, sr, top_k=args.topk, geo=geo))

    print_result(wav_path, result)
    save_spectrogram(wav_path, result, out_dir=args.out_dir)


if __name__ == "__main__":
    main()
