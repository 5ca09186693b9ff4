"""Satellite imagery acquisition and caching for solar-suitability assessments."""

__version__ = "0.1.0"
