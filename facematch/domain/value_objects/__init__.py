"""Value objects package."""
from .image import CorpusFilter, LoadedImage, Orientation
from .recognition import ReferenceMatch

__all__ = ["CorpusFilter", "LoadedImage", "Orientation", "ReferenceMatch"]
