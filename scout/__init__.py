"""
Scout - Adaptive Multi-Model Signal Engine

Classifies market regimes, predicts direction with an online network,
learns per-regime action values with Q-learning and fuses them into one
calibrated signal. Every outcome feeds back into all three learners.

Usage:
    from scout.engine import SignalEngine

    engine = SignalEngine()
    signal = engine.generate_signal(candles)
"""

__version__ = "1.0.0"
