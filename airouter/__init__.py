"""AI request orchestration: classification, budget-aware routing and hierarchical memory"""

__version__ = "0.1.0"
