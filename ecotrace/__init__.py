"""
EcoTrace - Carbon emission validation and cross-source reconciliation engine
"""

__version__ = "1.0.0"
