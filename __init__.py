"""
Activity Recorder - live recording and training-load analytics for endurance sessions.

This package provides functionality to:
- Buffer live sensor samples durably with crash recovery
- Aggregate power, heart rate, speed and elevation metrics in real time
- Compute NP, IF, TSS, VI, EF, decoupling, VAM and CTL/ATL/TSB
- Flatten structured workout plans and track adherence while recording
"""

__version__ = "1.0.0"
