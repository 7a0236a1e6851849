"""
Fisher-Wright Explorer

Single-locus allele count dynamics under selection and two-way mutation,
shown side by side as an infinite-population (deterministic) curve and a
finite-population (binomial sampling) curve.

Supports:
- Deterministic fixed-point iteration with a convergence horizon
- Binomial resampling over the same horizon, single run or replicates
- Line charts with axes rescaled to the data
- An interactive form for re-running with new parameters

Nomenclature:
- P: population size
- n: number of individuals carrying the variant (0 <= n <= P)
- s: selection coefficient, the fitness multiplier of the variant (1 = neutral)
- mu: mutation rate toward the variant
- nu: mutation rate away from the variant
- ps: frequency after selection, ps': frequency after selection and mutation
- T: horizon, the generation at which the deterministic curve converged
"""

import argparse
import logging
import math
import numbers
import sys
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import matplotlib.pyplot as plt


logger = logging.getLogger(__name__)


# =============================================================================
# Constants and Colors
# =============================================================================

CONVERGENCE_TOL = 0.001  # stop once the per-generation increment is below this
MIN_STEPS = 10           # never stop before t > MIN_STEPS
HORIZON_FACTOR = 10      # hard cap on the deterministic loop: t < 10 * P

COLOR_INF = '#1f78b4'     # blue, infinite population
COLOR_FINITE = '#33a02c'  # green, finite population

MAX_TRACES = 50  # individual replicate runs drawn behind the mean

FORM_FIELDS = ('P', 's', 'mu', 'nu')


# =============================================================================
# Parameters
# =============================================================================

class InvalidParameter(ValueError):
    """Simulation parameter is non-numeric or outside its range."""
    def __init__(self, message="Invalid simulation parameter.", field=None):
        super().__init__(message)
        self.field = field


def _check_real(name: str, value, lo: float, hi: float = math.inf) -> float:
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise InvalidParameter(f"{name} must be a number (got {value!r})", field=name)
    value = float(value)
    if not math.isfinite(value):
        raise InvalidParameter(f"{name} must be finite (got {value})", field=name)
    if not lo <= value <= hi:
        upper = f", {hi}]" if math.isfinite(hi) else ", inf)"
        raise InvalidParameter(f"{name} must lie in [{lo}{upper} (got {value})", field=name)
    return value


@dataclass(frozen=True)
class SimulationParameters:
    """
    Parameters of one run, validated on construction.

    Attributes
    ----------
    P : int
        Population size, > 0. Integral floats (100.0) are accepted.
    s : float
        Selection coefficient, >= 0. Fitness of the variant relative to 1.
    mu : float
        Mutation rate toward the variant, in [0, 1].
    nu : float
        Mutation rate away from the variant, in [0, 1].
    """
    P: int = 100
    s: float = 1.01
    mu: float = 0.01
    nu: float = 0.01

    def __post_init__(self):
        P = self.P
        if isinstance(P, bool) or not isinstance(P, numbers.Real):
            raise InvalidParameter(f"P must be a positive integer (got {P!r})", field='P')
        if not isinstance(P, numbers.Integral):
            if not (math.isfinite(P) and float(P).is_integer()):
                raise InvalidParameter(f"P must be a positive integer (got {P})", field='P')
        P = int(P)
        if P <= 0:
            raise InvalidParameter(f"P must be a positive integer (got {P})", field='P')

        object.__setattr__(self, 'P', P)
        object.__setattr__(self, 's', _check_real('s', self.s, 0.0))
        object.__setattr__(self, 'mu', _check_real('mu', self.mu, 0.0, 1.0))
        object.__setattr__(self, 'nu', _check_real('nu', self.nu, 0.0, 1.0))

    @classmethod
    def from_form(cls, values: Sequence[str]) -> 'SimulationParameters':
        """Build parameters from the raw (P, s, mu, nu) form fields."""
        values = list(values)
        if len(values) != len(FORM_FIELDS):
            raise InvalidParameter(
                f"expected {len(FORM_FIELDS)} fields {FORM_FIELDS}, got {len(values)}"
            )
        parsed = {}
        for name, raw in zip(FORM_FIELDS, values):
            try:
                parsed[name] = float(str(raw).strip())
            except ValueError:
                raise InvalidParameter(
                    f"{name} must be a number (got {raw!r})", field=name
                ) from None
        return cls(**parsed)

    def as_form(self) -> List[str]:
        return [str(getattr(self, name)) for name in FORM_FIELDS]


DEFAULT_PARAMS = SimulationParameters()


# =============================================================================
# Update Formulas
# =============================================================================
#
# One generation:
#   1. Selection:  ps  = s*n / (s*n + (P - n))
#   2. Mutation:   ps' = (1 - nu)*ps + mu*(1 - ps)
#   3. Next count: n   = P*ps'            (infinite population)
#                  n  ~ Binomial(P, ps')  (finite population)
#
# Both formulas accept scalars or arrays so replicates can be updated in one
# call.
# =============================================================================

def select(n, params: SimulationParameters):
    """Variant frequency after selection. Zero whenever s*n is zero."""
    n = np.asarray(n, dtype=float)
    w = params.s * n
    carriers = w > 0
    denom = np.where(carriers, w + (params.P - n), 1.0)
    ps = np.where(carriers, w / denom, 0.0)
    return ps if ps.ndim else float(ps)


def mutate(ps, params: SimulationParameters):
    """Variant frequency after forward (mu) and backward (nu) mutation."""
    ps = np.asarray(ps, dtype=float)
    psm = np.clip((1.0 - params.nu) * ps + params.mu * (1.0 - ps), 0.0, 1.0)
    return psm if psm.ndim else float(psm)


def next_frequency(n, params: SimulationParameters):
    return mutate(select(n, params), params)


# =============================================================================
# Trajectories
# =============================================================================

@dataclass(frozen=True, eq=False)
class Trajectory:
    """Time-ordered (t, n) points. Arrays are read-only once built."""
    t: np.ndarray
    n: np.ndarray

    def __post_init__(self):
        t = np.array(self.t, dtype=np.int64)
        n = np.array(self.n, dtype=float)
        if t.shape != n.shape:
            raise ValueError(f"t and n must have the same length ({t.shape} vs {n.shape})")
        t.flags.writeable = False
        n.flags.writeable = False
        object.__setattr__(self, 't', t)
        object.__setattr__(self, 'n', n)

    def __len__(self) -> int:
        return len(self.t)

    def __getitem__(self, i):
        if isinstance(i, slice):
            return Trajectory(self.t[i], self.n[i])
        return int(self.t[i]), float(self.n[i])

    def __iter__(self):
        return iter(self.points())

    def points(self) -> List[Tuple[int, float]]:
        return [(int(t), float(n)) for t, n in zip(self.t, self.n)]

    @property
    def final(self) -> float:
        return float(self.n[-1])


# =============================================================================
# Recurrence Solver (infinite population)
# =============================================================================

def solve_deterministic(params: SimulationParameters,
                        absolute: bool = False) -> Tuple[Trajectory, int]:
    """
    Iterate n -> P*ps' from n = 0 until the increment drops below
    CONVERGENCE_TOL (after MIN_STEPS generations) or t reaches
    HORIZON_FACTOR*P - 1.

    The stopping test compares the signed increment, so a large decrease
    also stops the loop. Pass ``absolute=True`` to compare |delta| instead.

    Returns
    -------
    (trajectory, T) where T is the last generation computed and the
    trajectory holds T + 1 points starting at (0, 0).
    """
    P = params.P
    n = 0.0
    ts = [0]
    ns = [0.0]

    t = 0
    for t in range(1, HORIZON_FACTOR * P):
        n_new = P * next_frequency(n, params)
        delta = n_new - n
        n = n_new
        ts.append(t)
        ns.append(n)

        step = abs(delta) if absolute else delta
        if t > MIN_STEPS and step < CONVERGENCE_TOL:
            logger.debug(f"Deterministic curve converged at t={t} (n={n:.4f}, delta={delta:.2e})")
            break
    else:
        logger.debug(f"Deterministic curve hit the cap t={t} without converging (n={n:.4f})")

    return Trajectory(ts, ns), t


# =============================================================================
# Stochastic Sampler (finite population)
# =============================================================================

def _resolve_rng(rng: Optional[np.random.Generator],
                 seed: Optional[int]) -> np.random.Generator:
    if rng is not None and seed is not None:
        raise ValueError("pass either rng or seed, not both")
    if rng is not None:
        return rng
    return np.random.default_rng(seed)


def _check_count(name: str, value) -> int:
    if isinstance(value, bool) or not isinstance(value, numbers.Integral) or value < 1:
        raise InvalidParameter(f"{name} must be a positive integer (got {value!r})", field=name)
    return int(value)


def sample_stochastic(params: SimulationParameters,
                      horizon: int,
                      rng: Optional[np.random.Generator] = None,
                      seed: Optional[int] = None) -> Trajectory:
    """
    Replay the selection/mutation update for generations 1 .. horizon - 1,
    drawing each count from Binomial(P, ps'). Runs the full horizon with no
    convergence check, so the trajectory has exactly ``horizon`` points.

    The random source is ``rng`` if given, otherwise a new generator seeded
    with ``seed``. The process-wide numpy state is never touched.
    """
    horizon = _check_count('horizon', horizon)
    rng = _resolve_rng(rng, seed)

    n = 0
    ns = [0]
    for _ in range(1, horizon):
        n = int(rng.binomial(params.P, next_frequency(n, params)))
        ns.append(n)

    return Trajectory(np.arange(horizon), ns)


def sample_replicates(params: SimulationParameters,
                      horizon: int,
                      n_replicates: int,
                      rng: Optional[np.random.Generator] = None,
                      seed: Optional[int] = None) -> np.ndarray:
    """
    Independent finite-population runs, all updated together.

    Returns
    -------
    ndarray of shape (n_replicates, horizon); column t holds the counts at
    generation t and column 0 is all zeros.
    """
    horizon = _check_count('horizon', horizon)
    n_replicates = _check_count('n_replicates', n_replicates)
    rng = _resolve_rng(rng, seed)

    counts = np.zeros((n_replicates, horizon), dtype=np.int64)
    n = counts[:, 0]
    for t in range(1, horizon):
        n = rng.binomial(params.P, next_frequency(n, params))
        counts[:, t] = n
    return counts


# =============================================================================
# Simulation Engine
# =============================================================================

@dataclass
class SimulationResult:
    """Both curves of one run and the horizon they share."""
    params: SimulationParameters
    deterministic: Trajectory
    stochastic: Trajectory
    horizon: int


def simulate(params: SimulationParameters,
             rng: Optional[np.random.Generator] = None,
             seed: Optional[int] = None,
             absolute: bool = False) -> SimulationResult:
    """Solve the deterministic curve, then sample the finite curve up to its horizon."""
    deterministic, T = solve_deterministic(params, absolute=absolute)
    stochastic = sample_stochastic(params, T, rng=rng, seed=seed)
    logger.debug(
        f"Simulated P={params.P}, s={params.s}, mu={params.mu}, nu={params.nu}: "
        f"T={T}, n_inf={deterministic.final:.3f}, n_finite={stochastic.final:.0f}"
    )
    return SimulationResult(params=params, deterministic=deterministic,
                            stochastic=stochastic, horizon=T)


# =============================================================================
# Plotting Functions
# =============================================================================

def _title(params: SimulationParameters) -> str:
    return f"P={params.P}, s={params.s}, μ={params.mu}, ν={params.nu}"


def plot_simulation(result: SimulationResult, ax=None, legend: bool = True,
                    figsize: Tuple[int, int] = (8, 4)):
    """
    Plot the infinite (blue) and finite (green) curves of one run.
    Axes span [0, T] x [0, P] with five ticks each.
    """
    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)
    else:
        fig = ax.figure

    det, sto = result.deterministic, result.stochastic
    ax.plot(det.t, det.n, color=COLOR_INF, lw=2,
            label='Infinite population' if legend else None)
    ax.plot(sto.t, sto.n, color=COLOR_FINITE, lw=1.5,
            label='Finite population' if legend else None)

    ax.set_xlim(0, result.horizon)
    ax.set_ylim(0, result.params.P)
    ax.locator_params(axis='both', nbins=5)
    ax.set_xlabel('Generation')
    ax.set_ylabel('n')
    ax.set_title(_title(result.params))
    if legend:
        ax.legend(loc='lower right')

    return fig, ax


def _plot_count_band(ax, counts: np.ndarray, color, label):
    """Draw up to MAX_TRACES finite runs, their mean count and the 5-95% band."""
    x = np.arange(counts.shape[1])

    for run in counts[:MAX_TRACES]:
        ax.plot(x, run, color=color, alpha=0.15, lw=0.5)

    ax.plot(x, counts.mean(axis=0), color=color, lw=2, label=label)

    if len(counts) > 1:
        lo, hi = np.quantile(counts, [0.05, 0.95], axis=0)
        ax.fill_between(x, lo, hi, color=color, alpha=0.2, step='mid')


def plot_replicate_counts(params: SimulationParameters, deterministic: Trajectory,
                          counts: np.ndarray, figsize: Tuple[int, int] = (8, 4)):
    """Replicate counts from sample_replicates() against the deterministic curve."""
    T = counts.shape[1]
    fig, ax = plt.subplots(figsize=figsize)
    _plot_count_band(ax, counts, COLOR_FINITE,
                     f'Finite population (mean of {len(counts)})')
    ax.plot(deterministic.t, deterministic.n, color=COLOR_INF, lw=2, ls='--',
            label='Infinite population')

    ax.set_xlim(0, T)
    ax.set_ylim(0, params.P)
    ax.locator_params(axis='both', nbins=5)
    ax.set_xlabel('Generation')
    ax.set_ylabel('n')
    ax.set_title(f"{_title(params)}, {len(counts)} replicates")
    ax.legend(loc='lower right')

    plt.tight_layout()
    return fig, ax


def plot_replicates(params: SimulationParameters, n_replicates: int = 50,
                    seed: Optional[int] = None, absolute: bool = False,
                    figsize: Tuple[int, int] = (8, 4)):
    """Run n_replicates finite populations over the deterministic horizon and plot them."""
    det, T = solve_deterministic(params, absolute=absolute)
    counts = sample_replicates(params, T, n_replicates, seed=seed)
    return plot_replicate_counts(params, det, counts, figsize=figsize)


# =============================================================================
# Interactive Explorer
# =============================================================================

class ChartSession:
    """
    Runs shown on one chart. Re-submitting the same parameters overlays a new
    pair of curves; changing any field clears the chart first.

    The session owns its random generator, so two sessions never share
    random state.
    """

    def __init__(self, seed: Optional[int] = None, absolute: bool = False):
        self.rng = np.random.default_rng(seed)
        self.absolute = absolute
        self.params: Optional[SimulationParameters] = None
        self.runs: List[SimulationResult] = []

    def submit(self, params: SimulationParameters) -> SimulationResult:
        if params != self.params:
            if self.runs:
                logger.debug(f"Parameters changed, clearing {len(self.runs)} run(s)")
            self.runs = []
            self.params = params
        result = simulate(params, rng=self.rng, absolute=self.absolute)
        self.runs.append(result)
        return result

    def clear(self):
        self.runs = []

    def draw(self, ax=None, figsize: Tuple[int, int] = (8, 4)):
        """Draw every run, axes rescaled to the latest one."""
        if ax is None:
            fig, ax = plt.subplots(figsize=figsize)
        else:
            fig = ax.figure
        for i, result in enumerate(self.runs):
            plot_simulation(result, ax=ax, legend=(i == 0))
        if self.runs:
            latest = self.runs[-1]
            ax.set_xlim(0, latest.horizon)
            ax.set_ylim(0, latest.params.P)
        return fig, ax


def make_explorer(session: Optional[ChartSession] = None,
                  defaults: SimulationParameters = DEFAULT_PARAMS):
    """Create the interactive parameter form and chart."""
    import ipywidgets as widgets
    from IPython.display import clear_output

    if session is None:
        session = ChartSession()

    descriptions = {'P': 'P', 's': 's', 'mu': 'μ', 'nu': 'ν'}
    fields = [
        widgets.Text(value=value, description=descriptions[name],
                     layout=widgets.Layout(width='200px'))
        for name, value in zip(FORM_FIELDS, defaults.as_form())
    ]
    run = widgets.Button(description='Run', button_style='primary')
    out = widgets.Output()

    def on_run(_):
        with out:
            clear_output(wait=True)
            try:
                params = SimulationParameters.from_form([f.value for f in fields])
            except InvalidParameter as e:
                print(f"Error: {e}")
                return
            session.submit(params)
            session.draw()
            plt.show()

    run.on_click(on_run)
    on_run(None)

    controls = widgets.HBox(fields + [run])
    return widgets.VBox([controls, out])


# =============================================================================
# Command Line
# =============================================================================

def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    d = DEFAULT_PARAMS
    p = argparse.ArgumentParser(
        description="Infinite vs finite population allele counts under selection and mutation."
    )
    p.add_argument('--P', type=float, default=d.P, help='Population size')
    p.add_argument('--s', type=float, default=d.s, help='Selection coefficient (1 = neutral)')
    p.add_argument('--mu', type=float, default=d.mu, help='Mutation rate toward the variant')
    p.add_argument('--nu', type=float, default=d.nu, help='Mutation rate away from the variant')
    p.add_argument('--seed', type=int, default=None, help='Seed for the finite-population run')
    p.add_argument('--replicates', type=int, default=1,
                   help='Number of finite-population runs to plot')
    p.add_argument('--absolute', action='store_true',
                   help='Stop the deterministic loop on |delta| instead of signed delta')
    p.add_argument('--out', '-o', default=None, help='Save the figure here instead of showing it')
    p.add_argument('--no-plot', action='store_true', help='Disable plotting')
    p.add_argument('--quiet', '-q', action='store_true', help='Suppress output except errors')
    p.add_argument('--verbose', '-v', action='store_true', help='Enable debug logging')
    return p.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s: %(message)s")

    try:
        params = SimulationParameters(P=args.P, s=args.s, mu=args.mu, nu=args.nu)
        if args.replicates < 1:
            raise InvalidParameter(f"replicates must be >= 1 (got {args.replicates})")
    except InvalidParameter as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.replicates > 1:
        det, T = solve_deterministic(params, absolute=args.absolute)
        counts = sample_replicates(params, T, args.replicates, seed=args.seed)
        finite_line = (f"  Finite population mean n(T-1) over {args.replicates} runs: "
                       f"{counts[:, -1].mean():.2f}")
    else:
        result = simulate(params, seed=args.seed, absolute=args.absolute)
        det, T = result.deterministic, result.horizon
        finite_line = f"  Finite population n(T-1): {result.stochastic.final:.0f}"

    if not args.quiet:
        print(f"Fisher-Wright: {_title(params)}")
        print(f"  Horizon T: {T}")
        print(f"  Infinite population n(T): {det.final:.4f}")
        print(finite_line)

    if args.no_plot:
        return 0

    if args.replicates > 1:
        fig, _ = plot_replicate_counts(params, det, counts)
    else:
        fig, _ = plot_simulation(result)

    if args.out:
        fig.savefig(args.out, dpi=150, bbox_inches='tight')
        if not args.quiet:
            print(f"  Figure: {args.out}")
        plt.close(fig)
    else:
        plt.show()
    return 0


if __name__ == "__main__":
    sys.exit(main())
