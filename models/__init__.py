"""Model definitions for bird sound classification."""
from models.bird_cnn import BirdSoundCNN
from models.feature_layers import InGraphBirdModel, MelSpecLayer
from models.metadata import MetadataModel

__all__ = ['BirdSoundCNN', 'InGraphBirdModel', 'MelSpecLayer', 'MetadataModel']
