"""
PresetForge - Image Preset Batch Processor
==========================================

Transforms in-memory images through an ordered operation pipeline (resize,
crop, rotate, compress, convert), fans image sets out across output presets
on isolated worker processes, and packages the results as files or a ZIP
archive.
"""

__version__ = "0.1.0"
