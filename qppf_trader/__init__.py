"""
QPPF signal and risk engine.

Options-flow sentiment + gamma exposure + momentum -> Signal -> RiskAssessment.
"""

__version__ = "2.0.0"
