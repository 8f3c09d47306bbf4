"""
volsurf
=======
Option chain ingestion and implied volatility surface construction.

Modules:
    black_scholes      - European pricing and greeks
    implied_vol        - Newton / bisection implied vol solver
    models             - Quotes, pricing inputs, solver results, OCC symbols
    rate_limiter       - Token bucket shared by all feed calls
    cache              - Single-flight TTL/LRU cache, quote cache
    surface_builder    - Surface construction, interpolation, grids
    persistence        - Surface codec, storage backends, surface cache
    data_feed          - Synthetic and yfinance quote sources, retrying fetch
    pipeline           - SurfaceService tying the above together
    visualization      - 2D/3D charting (matplotlib + plotly)
    svi_calibration    - SVI parameterization for synthetic generation
    config             - Global constants and defaults
"""

__version__ = "0.3.0"
__author__ = "Leo"
