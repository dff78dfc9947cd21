"""Core shared logic for candles, indicators, and condition evaluation.

This package contains pure business logic with no I/O dependencies
(no database, Redis, or network access). It is shared between the
live strategy monitor (app/) and the backtesting system (backtest/).
"""
