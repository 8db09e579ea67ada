from .png import carve_png_images, iter_png_ranges
from .spec import ResourceKind, ResourceSpec

__all__ = [
    "ResourceKind",
    "ResourceSpec",
    "carve_png_images",
    "iter_png_ranges",
]
