"""Location/season prior over species."""
import math

import torch
import torch.nn as nn


class MetadataModel(nn.Module):
    """
    Maps ``(lat, lon, week)`` to a per-class occurrence likelihood in [0, 1].

    Latitude/longitude are scaled to [-1, 1] and the week of the year (1-48)
    is encoded on the unit circle, so week 48 sits next to week 1.
    """

    def __init__(self, num_classes: int, hidden: int = 64):
        super().__init__()
        self.num_classes = num_classes
        self.net = nn.Sequential(
            nn.Linear(4, hidden),
            nn.ReLU(),
            nn.Linear(hidden, hidden),
            nn.ReLU(),
            nn.Linear(hidden, num_classes),
        )

    @staticmethod
    def encode(lat, lon, week):
        lat = torch.as_tensor(lat, dtype=torch.float32).reshape(-1)
        lon = torch.as_tensor(lon, dtype=torch.float32).reshape(-1)
        week = torch.as_tensor(week, dtype=torch.float32).reshape(-1)
        angle = 2 * math.pi * (week - 1) / 48.0
        return torch.stack([lat / 90.0, lon / 180.0, torch.sin(angle), torch.cos(angle)], dim=1)

    def forward(self, x):
        return torch.sigmoid(self.net(x))
