"""
Compass Analytics Core

Orchestration and caching layer for student analytics:
1. Derives deterministic cache keys and invalidation tags for a data set
2. Serves results from an in-memory TTL/tagged cache
3. Dispatches misses to a shared background computation engine
4. Guards the engine with a circuit breaker and per-request watchdog
5. Precomputes common analytics during idle time
"""

__version__ = "0.1.0"
