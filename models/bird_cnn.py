"""CNN classifier over log-mel spectrograms."""
import torch
import torch.nn as nn

from utils.config import ModelConfig


class ConvBlock(nn.Module):
    """3x3 conv (same padding) -> ReLU -> BatchNorm -> 2x2 max-pool."""

    def __init__(self, in_ch: int, out_ch: int):
        super().__init__()
        self.conv = nn.Conv2d(in_ch, out_ch, kernel_size=3, padding=1)
        self.bn = nn.BatchNorm2d(out_ch)
        self.pool = nn.MaxPool2d(2)

    def forward(self, x):
        return self.pool(self.bn(torch.relu(self.conv(x))))


class DepthwiseSeparableConv(nn.Module):
    """Depthwise 3x3 -> ReLU -> BN, then pointwise 1x1 -> ReLU -> BN."""

    def __init__(self, in_ch: int, out_ch: int):
        super().__init__()
        self.depthwise = nn.Conv2d(in_ch, in_ch, kernel_size=3, padding=1, groups=in_ch)
        self.dw_bn = nn.BatchNorm2d(in_ch)
        self.pointwise = nn.Conv2d(in_ch, out_ch, kernel_size=1)
        self.pw_bn = nn.BatchNorm2d(out_ch)

    def forward(self, x):
        x = self.dw_bn(torch.relu(self.depthwise(x)))
        return self.pw_bn(torch.relu(self.pointwise(x)))


class BirdSoundCNN(nn.Module):
    """
    Bird species classifier.

    Input:  ``[B, 1, n_mels, frames]`` normalized log-mel spectrograms.
    Output: ``[B, num_classes]`` logits (use :meth:`predict_proba` for softmax).

    Topology:
        block1  conv 32  + BN + pool
        block2  conv 64  + BN + pool
        block3  depthwise-separable 128 + pool
        block4  depthwise-separable 256 + pool
        global average pool -> fc 512 -> dropout -> fc 256 -> dropout -> fc num_classes
    """

    def __init__(self, config: ModelConfig):
        super().__init__()
        self.config = config
        self.block1 = ConvBlock(1, 32)
        self.block2 = ConvBlock(32, 64)
        self.block3 = DepthwiseSeparableConv(64, 128)
        self.block3_pool = nn.MaxPool2d(2)
        self.block4 = DepthwiseSeparableConv(128, 256)
        self.block4_pool = nn.MaxPool2d(2)
        self.global_pool = nn.AdaptiveAvgPool2d((1, 1))
        self.head = nn.Sequential(
            nn.Flatten(),
            nn.Linear(256, 512),
            nn.ReLU(),
            nn.Dropout(config.dropout_rate),
            nn.Linear(512, 256),
            nn.ReLU(),
            nn.Dropout(config.dropout_rate),
        )
        self.classifier = nn.Linear(256, config.num_classes)
        self._init_weights()

    def _init_weights(self):
        for m in self.modules():
            if isinstance(m, nn.Conv2d) and m.groups == 1 and m.kernel_size == (3, 3):
                nn.init.kaiming_normal_(m.weight, nonlinearity="relu")
                nn.init.zeros_(m.bias)
        for m in self.head:
            if isinstance(m, nn.Linear):
                nn.init.kaiming_normal_(m.weight, nonlinearity="relu")
                nn.init.zeros_(m.bias)

    def forward(self, x):
        x = self.block2(self.block1(x))
        x = self.block3_pool(self.block3(x))
        x = self.block4_pool(self.block4(x))
        x = self.global_pool(x)
        return self.classifier(self.head(x))

    @torch.no_grad()
    def predict_proba(self, x):
        return torch.softmax(self(x), dim=1)
