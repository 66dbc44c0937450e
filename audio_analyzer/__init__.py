"""Audio analyzer service - Essentia feature extraction in isolated worker processes, MusiCNN inference in the coordinator"""

__version__ = '0.3.0'
