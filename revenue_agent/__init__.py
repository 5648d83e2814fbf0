"""Revenue Intelligence Agent - agentic orchestration layer"""

__version__ = "0.1.0"
