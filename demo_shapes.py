# Minimal, shape-first demo: waveform -> log-mel -> bird CNN
import math

import numpy as np

from transforms.audio import get_mel_transform, wav_to_logmel
from utils.config import DEFAULT_CONFIG, ModelConfig
from utils.models import build_model


def main():
    cfg = DEFAULT_CONFIG
    t = np.arange(int(cfg.sample_rate * cfg.target_duration)) / cfg.sample_rate
    freq = 3000.0
    wav = np.sin(2 * math.pi * freq * t).astype(np.float32)  # [T]

    print("Waveform shape:", wav.shape)

    mel_t = get_mel_transform(cfg)
    log_mel = wav_to_logmel(wav, mel_transform=mel_t)  # [1, n_mels, time]
    print("Log-mel shape:", tuple(log_mel.shape))

    x = log_mel.unsqueeze(0)  # [B=1, 1, n_mels, time]
    print("Model input shape:", tuple(x.shape))

    model = build_model(ModelConfig.for_classes(10, cfg)).eval()
    logits = model(x)
    print("Logits shape:", tuple(logits.shape))


if __name__ == "__main__":
    main()
