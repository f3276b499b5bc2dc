"""Rule-driven home battery automation"""

__version__ = '1.0.0'
