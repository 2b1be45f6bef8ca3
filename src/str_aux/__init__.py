"""STR-AUX analytical core.

Turns per-symbol order-book snapshots into bounded statistical signals:
time-bucketed sampling points, the IDHR log-return histogram, floating-mode
reference prices, tendency vectors and sustained-shift detection.
"""
