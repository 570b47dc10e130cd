"""
Utility functions module.

Time Semantics:
- The snapshot's ``as_of`` timestamp is authoritative for evaluation
- Wall-clock time is only used for scheduling and as a fallback
- Trading sessions are counted by calendar date in the market timezone
"""
