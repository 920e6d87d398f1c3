"""OTC Desk Package.

Back office for an over-the-counter crypto trading desk: OTC pricing, deal and
quote lifecycle, multi-rail settlement, institutional credit, tiered
compliance limits and custody policy.
"""

__version__ = "0.1.0"
__author__ = "OTC Desk Team"
