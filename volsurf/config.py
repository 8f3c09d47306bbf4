"""
Global configuration for the vol surface pipeline.

Keeps all magic numbers in one place. Functions that take a ``None``
default resolve it from here at call time, so tests and the CLI can
override per call without touching module state.
"""

from pathlib import Path


# ── paths ────────────────────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent.parent
DATA_DIR = PROJECT_ROOT / "data"
OUTPUT_DIR = PROJECT_ROOT / "output"
SURFACE_STORE_DIR = DATA_DIR / "surfaces"


# ── market parameters ────────────────────────────────────────────────────
TICKER = "SPY"
RISK_FREE_RATE = 0.043          # annualized; approximate fed funds rate
DIVIDEND_YIELD = 0.0            # surfaces are built without carry unless asked
EXPIRY_HOUR_UTC = 16            # contracts expire at 16:00 on expiration date
DAYS_PER_YEAR = 365.25          # ACT/365.25 year fractions


# ── feed quota / rate limiting ───────────────────────────────────────────
FEED_REQUESTS_PER_SECOND = 2.0  # published quota of the quote feed
FEED_BURST = 2                  # bucket capacity, requests allowed back to back
FEED_ACQUIRE_TIMEOUT = 10.0     # seconds a fetch may wait for a token
FEED_MAX_RETRIES = 3            # attempts per fetch on FeedUnavailable / FeedRateLimited
FEED_RETRY_INITIAL = 0.5        # seconds, first backoff
FEED_RETRY_MAX = 8.0            # seconds, backoff ceiling
FEED_RETRY_JITTER = 0.5         # seconds of random jitter per backoff


# ── caches ───────────────────────────────────────────────────────────────
AS_OF_BUCKET_SECONDS = 60       # feed minimum refresh interval
QUOTE_CACHE_TTL_SECONDS = 30.0  # stale quotes are a pricing bug, keep this short
QUOTE_CACHE_MAX_ENTRIES = 256
SURFACE_CACHE_TTL_SECONDS = 60.0
SURFACE_CACHE_MAX_ENTRIES = 64


# ── implied vol solver ───────────────────────────────────────────────────
VOL_LOWER = 1e-4                # bracket floor (0.01% annualized)
VOL_UPPER = 5.0                 # bracket ceiling (500%)
PRICE_TOLERANCE = 1e-6          # absolute residual in price units
MAX_ITERATIONS = 100            # total solver iterations, newton + bisection
NEWTON_MAX_ITERATIONS = 50      # newton budget before falling back to bisection
VEGA_FLOOR = 1e-8               # below this a newton step is meaningless
DEFAULT_VOL_GUESS = 0.3         # seed for deep ITM/OTM contracts
GUESS_MONEYNESS_BAND = (0.5, 1.5)  # Brenner-Subrahmanyam is only used inside this band


# ── data filtering ───────────────────────────────────────────────────────
MONEYNESS_BOUND = 0.25          # |log(K/S)| < 0.25 keeps ~75%-125% of spot
MIN_OPEN_INTEREST = 5           # live source: drop strikes with OI below this...
MIN_VOLUME = 5                  # ...unless they traded at least this much today
MAX_IV = 2.0                    # synthetic smile is clipped to [MIN_IV, MAX_IV]
MIN_IV = 0.01
N_EXPIRIES = 8                  # how many expiries to pull in live mode


# ── surface grid ─────────────────────────────────────────────────────────
GRID_K_POINTS = 100             # resolution along strike axis
GRID_T_POINTS = 60              # resolution along maturity axis
INTERPOLATION_METHOD = "linear"  # "cubic", "linear", or "nearest" for to_grid
DENSITY_POINTS = 201            # strike samples for the risk-neutral density


# ── persistence ──────────────────────────────────────────────────────────
SURFACE_SCHEMA = "volsurf.surface"
SURFACE_SCHEMA_VERSION = 1


# ── SVI synthetic quote defaults ─────────────────────────────────────────
# these are tuned to produce realistic SPY-like surfaces
SVI_ATM_BASE = 0.18             # base ATM vol level
SVI_ATM_DECAY = 0.03            # how much ATM vol drops with maturity
SVI_ATM_LAMBDA = 1.5            # decay rate parameter
SVI_SKEW_BASE = -0.04           # long-run skew coefficient
SVI_SKEW_SHORT = -0.12          # additional skew at short maturities
SVI_SKEW_LAMBDA = 0.8           # skew decay rate
SVI_SMILE_BASE = 0.10           # long-run smile/curvature coefficient
SVI_SMILE_SHORT = 0.25          # additional curvature at short maturities
SVI_SMILE_LAMBDA = 1.0          # curvature decay rate
SVI_NOISE_STD = 0.002           # micro-noise std for realism
SVI_HALF_SPREAD = 0.01          # relative half bid/ask spread around model price
SVI_EXPIRY_DAYS = (7, 14, 30, 61, 91, 182, 274, 365, 547, 730)
SVI_STRIKE_STEP = 2.5


# ── visualization ────────────────────────────────────────────────────────
DARK_BG = "#0c0c16"
GRID_COLOR_ALPHA = 0.12
DPI = 200                       # matplotlib export resolution
FIG_WIDTH_3D = 14
FIG_HEIGHT_3D = 9
FIG_WIDTH_2D = 12
FIG_HEIGHT_2D = 6

# camera angles for 3D surface (matplotlib)
ELEV = 25
AZIM = -55

# plotly camera
PLOTLY_CAMERA = dict(eye=dict(x=1.85, y=-1.55, z=0.85))

# skew line colors (mpl + plotly)
SKEW_COLORS = ["#ff6b6b", "#ffd93d", "#6bcb77", "#4d96ff", "#b388ff"]
MAX_SMILES = 5                  # expiries drawn on the 2D smile chart


# ── logging ──────────────────────────────────────────────────────────────
LOG_LEVEL = "INFO"


# ── random seed ──────────────────────────────────────────────────────────
SEED = 42  # reproducibility for synthetic generation
