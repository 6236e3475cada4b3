"""
Core modules for points-meter.

This package contains pricing resolution, unit estimation, cost
calculation, points conversion, charge enforcement and the billing pipeline.
"""
