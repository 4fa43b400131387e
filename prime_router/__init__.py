"""
Prime Router - Hybrid Local/Cloud Inference Request Routing
"""

__version__ = "0.1.0"
