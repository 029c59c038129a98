"""
Spot Sync - keep listeners in step with a host's playback
"""
__version__ = "0.3.0"
