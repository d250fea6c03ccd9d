"""Linker for 16-bit OMF object modules producing DOS MZ executables and libraries."""

__version__ = "1.0.1"
__all__ = ["__version__"]