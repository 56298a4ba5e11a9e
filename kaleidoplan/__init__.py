"""
Kaleidoplan Player - music playback integration for the Kaleidoplan event app
"""

from .version import VERSION, get_full_version

__version__ = VERSION
__all__ = ['VERSION', 'get_full_version']
