#!/usr/bin/env python3
# ==============================================================================
# TRIAGE
# Statistical Validation Report for a Prehospital Triage Risk Score
#
# Loads held-out encounters, outcome labels and pre-computed model predictions,
# then reports discrimination, calibration and weighting sensitivity.
# ==============================================================================

VERSION = "1.0.0"  # TRIAGE version for audit and reproducibility

import hashlib
import hmac
import json
import os
import platform
import re
import secrets
import sys
import time
import warnings
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np  # type: ignore
import pandas as pd

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402
import seaborn as sns  # noqa: E402
import statsmodels.api as sm  # noqa: E402
from scipy import stats  # type: ignore # noqa: E402
from scipy.special import expit, logit  # noqa: E402
from sklearn.experimental import enable_iterative_imputer  # noqa: F401 # type: ignore
from sklearn.impute import IterativeImputer  # noqa: E402
from sklearn.metrics import roc_auc_score  # type: ignore[import-untyped]
from statsmodels.tools.sm_exceptions import PerfectSeparationError  # noqa: E402

"""
TRIAGE: Validation of a machine-learning risk score for ambulance triage

Academic References:
[1] Efron B, Tibshirani R. An Introduction to the Bootstrap. Chapman & Hall 1993.
[2] Van Calster B, et al. A calibration hierarchy for risk models was defined:
    from utopia to empirical data. J Clin Epidemiol 2016;74:167-76.
[3] Harrell FE Jr. Regression Modeling Strategies. 2nd ed. Springer, 2015.
[4] Rubin DB. Multiple Imputation for Nonresponse in Surveys. Wiley, 1987.
"""

# ---------------------------
# Styling
# ---------------------------

plt.rcParams["figure.dpi"] = 150
plt.rcParams["savefig.dpi"] = 250
plt.rcParams["savefig.bbox"] = "tight"

# ---------------------------
# Defaults
# ---------------------------

RANDOM_STATE = 42
OUTPUT_ROOT_DEFAULT = "TRIAGE_OUTPUT"
N_BOOTSTRAP = 1000
CI_LEVEL = 0.95
MIN_GROUP_N = 50  # Calibration groups below this are not reported
CALL_TYPE_TOP_K = 5
INCLUSION_MIN_AGE = 18
MI_N_IMPUTATIONS = 5
PROB_EPS = 1e-7

# Fixed probability grid for mean absolute calibration error
CALIBRATION_GRID = np.round(np.arange(0.01, 1.0, 0.01), 2)

# Samples table columns
AGE_COL = "age"
GENDER_COL = "gender"
PRIORITY_COL = "priority"
CALL_TYPE_PREFIX = "calltype_"
OTHER_LABEL = "Other"
REQUIRED_SAMPLE_COLUMNS = (AGE_COL, GENDER_COL, PRIORITY_COL)

# Outcomes and sub-models share one ordering: (admission, critical care, mortality)
OUTCOMES = ("admission", "critical_care", "mortality_2d")
SUBMODEL_ORDER = OUTCOMES
SCORE_KEY = "score"
SUBMODEL_PREFIX = "p_"

# ROC orientation per predictor; dispatch priority 1 is the most urgent
PREDICTOR_DIRECTIONS = {PRIORITY_COL: "auto"}

# Relevant (predictor, outcome) pairs for calibration
CALIBRATION_PAIRS = [(SCORE_KEY, outcome) for outcome in OUTCOMES] + [
    (SUBMODEL_PREFIX + outcome, outcome) for outcome in OUTCOMES
]

GROUPING_VARS = ("overall", "age_group", GENDER_COL, PRIORITY_COL, "call_type")

# Weight-sensitivity configuration table, weights in SUBMODEL_ORDER
WEIGHT_SCHEMES = [
    {"name": "equal", "weights": (1.0, 1.0, 1.0), "use_min": False},
    {"name": "admission_only", "weights": (1.0, 0.0, 0.0), "use_min": False},
    {"name": "critical_care_only", "weights": (0.0, 1.0, 0.0), "use_min": False},
    {"name": "mortality_only", "weights": (0.0, 0.0, 1.0), "use_min": False},
    {"name": "severity_weighted", "weights": (1.0, 2.0, 3.0), "use_min": False},
    {"name": "equal_min", "weights": (1.0, 1.0, 1.0), "use_min": True},
]


# ---------------------------
# Errors
# ---------------------------


class ReportInputError(ValueError):
    """Malformed or misaligned input; the report run cannot continue."""


class WeightConfigError(ValueError):
    """Invalid weight vector for composite score construction."""


# ---------------------------
# Configuration
# ---------------------------


DEFAULT_SETTINGS: Dict[str, Any] = {
    "seed": RANDOM_STATE,
    "n_bootstrap": N_BOOTSTRAP,
    "ci": CI_LEVEL,
    "min_group_n": MIN_GROUP_N,
    "call_type_top_k": CALL_TYPE_TOP_K,
    "apply_inclusion": True,
    "inclusion_min_age": INCLUSION_MIN_AGE,
    "public_model": False,
    "n_imputations": MI_N_IMPUTATIONS,
    "make_plots": True,
    "make_pdf": True,
}


def _env_flag(raw: str) -> bool:
    return raw.strip() == "1"


def _env_flag_off(raw: str) -> bool:
    return raw.strip() != "1"


# Environment variable -> (setting, parser)
ENV_OVERRIDES: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "TRIAGE_SEED": ("seed", int),
    "TRIAGE_N_BOOTSTRAP": ("n_bootstrap", int),
    "TRIAGE_CI": ("ci", float),
    "TRIAGE_MIN_GROUP_N": ("min_group_n", int),
    "TRIAGE_PUBLIC_MODEL": ("public_model", _env_flag),
    "TRIAGE_NO_INCLUSION": ("apply_inclusion", _env_flag_off),
    "TRIAGE_NO_PLOTS": ("make_plots", _env_flag_off),
    "TRIAGE_NO_PDF": ("make_pdf", _env_flag_off),
}


def resolve_settings(session_config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Resolve run settings.

    Precedence (lowest to highest): DEFAULT_SETTINGS, TRIAGE_* environment
    variables, then the explicit session_config dictionary. Numeric session
    values (command-line strings included) are coerced to the default type.
    """
    settings = dict(DEFAULT_SETTINGS)
    for env_var, (key, parse) in ENV_OVERRIDES.items():
        raw = os.environ.get(env_var)
        if raw is None or not raw.strip():
            continue
        try:
            settings[key] = parse(raw)
        except ValueError as e:
            raise ReportInputError(f"Invalid value for {env_var}: {raw!r}") from e

    if session_config:
        unknown = sorted(set(session_config) - set(DEFAULT_SETTINGS))
        if unknown:
            raise ReportInputError(f"Unknown settings: {', '.join(unknown)}")
        for key, value in session_config.items():
            default = DEFAULT_SETTINGS[key]
            if isinstance(default, (int, float)) and not isinstance(default, bool):
                try:
                    value = type(default)(value)
                except (TypeError, ValueError) as e:
                    raise ReportInputError(
                        f"Invalid value for setting '{key}': {value!r}"
                    ) from e
            settings[key] = value

    if not 0.0 < float(settings["ci"]) < 1.0:
        raise ReportInputError(f"CI level must be in (0, 1), got {settings['ci']}")
    if int(settings["n_bootstrap"]) < 1:
        raise ReportInputError("n_bootstrap must be at least 1")
    return settings


# ---------------------------
# Utilities
# ---------------------------


def now_ts() -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S")


def safe_name(s: str) -> str:
    s = re.sub(r"[^a-zA-Z0-9._-]+", "_", str(s)).strip("_")
    return s[:120] if s else "report"


def write_csv(path: Path, df: pd.DataFrame):
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)


def write_json(path: Path, obj: Dict[str, Any]):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, ensure_ascii=False)


def get_versions() -> Dict[str, str]:
    import fpdf as _fpdf
    import scipy as _sp
    import sklearn as _sk
    import statsmodels as _sm

    return {
        "python": sys.version.replace("\n", " "),
        "numpy": np.__version__,
        "pandas": pd.__version__,
        "scipy": _sp.__version__,
        "sklearn": _sk.__version__,
        "statsmodels": _sm.__version__,
        "matplotlib": matplotlib.__version__,
        "seaborn": sns.__version__,
        "fpdf2": getattr(_fpdf, "__version__", "unknown"),
        "os_system": platform.system(),
        "os_release": platform.release(),
        "machine": platform.machine(),
    }


def _paired(y_true, y_pred) -> Tuple[np.ndarray, np.ndarray]:
    """Coerce to float arrays of equal length and drop pairwise-missing rows."""
    y_true = np.asarray(y_true, dtype=float).ravel()
    y_pred = np.asarray(y_pred, dtype=float).ravel()
    if y_true.shape != y_pred.shape:
        raise ReportInputError(
            f"Label and prediction lengths differ: {len(y_true)} vs {len(y_pred)}"
        )
    keep = ~(np.isnan(y_true) | np.isnan(y_pred))
    return y_true[keep], y_pred[keep]


def _has_both_classes(y_true: np.ndarray) -> bool:
    return len(y_true) >= 2 and np.unique(y_true).size >= 2


# ---------------------------
# Run log (append-only JSONL)
# ---------------------------


def _new_session_key() -> Tuple[str, bytes]:
    """Return (display verification key, secret HMAC key) for one run."""
    secret = secrets.token_bytes(32)
    fingerprint = hashlib.sha256(secret).hexdigest().upper()
    return fingerprint[:16], secret


class AuditLog:
    """
    Append-only run log.

    Every entry carries the session verification key and a sequence number,
    so tables and figures can be traced back to the run that produced them.
    finalize_session() seals the log with an HMAC-SHA256 over all entries.
    """

    def __init__(self, jsonl_path: Path):
        self.jsonl_path = Path(jsonl_path)
        self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
        self.verification_key, self._secret = _new_session_key()
        self.session_start = now_ts()
        self.log_count = 0
        self._entries: List[Dict[str, Any]] = []
        self._write_entry(
            "SESSION_INIT",
            {
                "verification_key": self.verification_key,
                "session_start": self.session_start,
                "triage_version": VERSION,
            },
        )

    def _write_entry(self, event: str, details: Optional[Dict[str, Any]] = None):
        self.log_count += 1
        entry = {
            "ts": now_ts(),
            "event": event,
            "details": details or {},
            "verification_key": self.verification_key,
            "log_sequence": self.log_count,
        }
        self._entries.append(entry)
        with open(self.jsonl_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
        return entry

    def log(self, event: str, details: Optional[Dict[str, Any]] = None):
        """Log an event."""
        return self._write_entry(event, details)

    def integrity_hash(self) -> str:
        serialized = json.dumps(
            self._entries, sort_keys=True, ensure_ascii=False, default=str
        )
        return (
            hmac.new(self._secret, serialized.encode("utf-8"), hashlib.sha256)
            .hexdigest()
            .upper()
        )

    def finalize_session(self) -> Dict[str, Any]:
        """Seal the log. Any later edit of earlier entries invalidates the hash."""
        integrity_hash = self.integrity_hash()
        summary = {
            "verification_key": self.verification_key,
            "session_start": self.session_start,
            "session_end": now_ts(),
            "total_entries": self.log_count,
            "integrity_hash": integrity_hash,
            "integrity_algorithm": "HMAC-SHA256",
        }
        self._write_entry(
            "SESSION_FINALIZED",
            {"integrity_hash": integrity_hash, "total_entries": self.log_count},
        )
        return summary

    def get_verification_key(self) -> str:
        return self.verification_key


# ---------------------------
# Input loading
# ---------------------------


def normalize_binary_label(y: pd.Series) -> pd.Series:
    """
    Map an outcome column to float 0/1 with NaN for missing.

    Numeric 0/1 columns are kept; two-level text columns are mapped in sorted
    order (e.g. "No" -> 0, "Yes" -> 1). Anything else is malformed input.
    """
    observed = pd.Series(y.dropna().unique())
    if observed.empty:
        return pd.Series(np.nan, index=y.index, dtype=float)
    numeric = pd.to_numeric(observed, errors="coerce")
    if numeric.notna().all():
        if set(numeric.tolist()).issubset({0, 1}):
            return pd.to_numeric(y, errors="coerce").astype(float)
        raise ReportInputError(
            f"Outcome '{y.name}' is not binary: values {sorted(numeric.tolist())[:6]}"
        )
    levels = sorted(observed.astype(str).unique())
    if len(levels) != 2:
        raise ReportInputError(
            f"Outcome '{y.name}' is not binary: {len(levels)} distinct values"
        )
    mapper = {levels[0]: 0.0, levels[1]: 1.0}
    return y.map(lambda v: mapper[str(v)] if pd.notna(v) else np.nan).astype(float)


def _read_table(path: Path, what: str) -> pd.DataFrame:
    try:
        return pd.read_csv(path, low_memory=False)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise ReportInputError(f"Cannot parse {what} table {path}: {e}") from e


def load_samples(path: Path) -> pd.DataFrame:
    return _read_table(path, "samples")


def load_labels(path: Path, outcomes: Sequence[str] = OUTCOMES) -> pd.DataFrame:
    labels = _read_table(path, "labels")
    missing = [o for o in outcomes if o not in labels.columns]
    if missing:
        raise ReportInputError(f"Labels table lacks outcome columns: {missing}")
    for outcome in outcomes:
        labels[outcome] = normalize_binary_label(labels[outcome])
    return labels


def _numeric_vector(values: Any, where: str) -> np.ndarray:
    try:
        vec = np.asarray(values, dtype=float)
    except (TypeError, ValueError) as e:
        raise ReportInputError(f"{where}: must be a numeric vector ({e})") from e
    if vec.ndim != 1:
        raise ReportInputError(
            f"{where}: must be a numeric vector, got ndim={vec.ndim}"
        )
    return vec


def _parse_model_section(section: Any, where: str) -> Dict[str, Any]:
    if not isinstance(section, Mapping):
        raise ReportInputError(f"{where}: expected an object")
    if SCORE_KEY not in section or "submodels" not in section:
        raise ReportInputError(f"{where}: needs '{SCORE_KEY}' and 'submodels' keys")
    submodels = section["submodels"]
    if not isinstance(submodels, Mapping):
        raise ReportInputError(f"{where}: 'submodels' must map name -> vector")
    return {
        SCORE_KEY: _numeric_vector(section[SCORE_KEY], f"{where} '{SCORE_KEY}'"),
        "submodels": {
            str(k): _numeric_vector(v, f"{where} sub-model '{k}'")
            for k, v in submodels.items()
        },
    }


def load_model_properties(path: Path) -> Dict[str, Any]:
    """
    Load the model-properties document.

    Layout::

        {"score": [...], "submodels": {"admission": [...], ...},
         "public": {"score": [...], "submodels": {...}}}

    The "public" section (public-release model) is optional.
    """
    with open(path, "r", encoding="utf-8") as f:
        try:
            doc = json.load(f)
        except json.JSONDecodeError as e:
            raise ReportInputError(f"Model properties are not valid JSON: {e}") from e

    props = _parse_model_section(doc, "model properties")
    props["public"] = (
        _parse_model_section(doc["public"], "public model properties")
        if doc.get("public") is not None
        else None
    )
    return props


def select_model(properties: Dict[str, Any], public_model: bool) -> Dict[str, Any]:
    """Pick the full or the public-release model from the properties document."""
    if not public_model:
        return {SCORE_KEY: properties[SCORE_KEY], "submodels": properties["submodels"]}
    if properties.get("public") is None:
        raise ReportInputError(
            "Public-release model requested but properties have no 'public' section"
        )
    return properties["public"]


def load_display_names(path: Optional[Path]) -> Dict[str, str]:
    """Read a code -> display name lookup table (columns: code, display_name)."""
    if path is None:
        return {}
    table = pd.read_csv(path, dtype=str)
    if not {"code", "display_name"}.issubset(table.columns):
        raise ReportInputError("Lookup table needs 'code' and 'display_name' columns")
    table = table.dropna(subset=["code"])
    return dict(zip(table["code"], table["display_name"].fillna(table["code"])))


def display_name(code: Any, lookup: Dict[str, str]) -> str:
    return lookup.get(str(code), str(code))


def validate_alignment(
    samples: pd.DataFrame,
    labels: pd.DataFrame,
    properties: Dict[str, Any],
    outcomes: Sequence[str] = OUTCOMES,
):
    """
    Check that samples, labels and every prediction vector are row-aligned.

    Raises:
        ReportInputError: on any shape mismatch or missing required field
    """
    n = len(samples)
    if len(labels) != n:
        raise ReportInputError(
            f"Row count mismatch: samples has {n} rows, labels has {len(labels)}"
        )
    missing_cols = [c for c in REQUIRED_SAMPLE_COLUMNS if c not in samples.columns]
    if missing_cols:
        raise ReportInputError(f"Samples table lacks columns: {missing_cols}")
    missing_outcomes = [o for o in outcomes if o not in labels.columns]
    if missing_outcomes:
        raise ReportInputError(
            f"Labels table lacks outcome columns: {missing_outcomes}"
        )

    sections = [("model", properties)]
    if properties.get("public") is not None:
        sections.append(("public model", properties["public"]))
    for name, section in sections:
        if len(section[SCORE_KEY]) != n:
            raise ReportInputError(
                f"Row count mismatch: {name} score has {len(section[SCORE_KEY])} "
                f"values, samples has {n}"
            )
        absent = [m for m in SUBMODEL_ORDER if m not in section["submodels"]]
        if absent:
            raise ReportInputError(f"{name} lacks sub-models: {absent}")
        for key, vec in section["submodels"].items():
            if len(vec) != n:
                raise ReportInputError(
                    f"Row count mismatch: {name} sub-model '{key}' has {len(vec)} "
                    f"values, samples has {n}"
                )


def _subset_section(section: Dict[str, Any], keep: np.ndarray) -> Dict[str, Any]:
    return {
        SCORE_KEY: section[SCORE_KEY][keep],
        "submodels": {k: v[keep] for k, v in section["submodels"].items()},
    }


def apply_inclusion_criteria(
    samples: pd.DataFrame,
    labels: pd.DataFrame,
    properties: Dict[str, Any],
    min_age: float = INCLUSION_MIN_AGE,
    public_model: bool = False,
    audit: Optional[AuditLog] = None,
) -> Tuple[pd.DataFrame, pd.DataFrame, Dict[str, Any]]:
    """
    Keep adult encounters with a recorded overall score.

    The score checked is that of the model being reported (the public-release
    model when public_model is set).

    The same row mask is applied to samples, labels and every prediction
    vector so that alignment by row order is preserved.
    """
    age = pd.to_numeric(samples[AGE_COL], errors="coerce").to_numpy(dtype=float)
    score = select_model(properties, public_model)[SCORE_KEY]
    keep = (age >= min_age) & ~np.isnan(score)

    kept = _subset_section(properties, keep)
    kept["public"] = (
        _subset_section(properties["public"], keep)
        if properties.get("public") is not None
        else None
    )
    if audit:
        audit.log(
            "INCLUSION_APPLIED",
            {
                "min_age": min_age,
                "public_model": bool(public_model),
                "n_before": int(len(samples)),
                "n_after": int(keep.sum()),
            },
        )
    return (
        samples.loc[keep].reset_index(drop=True),
        labels.loc[keep].reset_index(drop=True),
        kept,
    )


# ---------------------------
# Grouping variables
# ---------------------------


def age_quartiles(age) -> pd.Series:
    """Age quartile labels such as 'Q1 (18-41)'; NaN where age is missing."""
    age = pd.to_numeric(pd.Series(age), errors="coerce").astype(float)
    if age.notna().sum() < 4:
        return pd.Series(np.nan, index=age.index, dtype=object)
    codes, edges = pd.qcut(age, 4, labels=False, retbins=True, duplicates="drop")
    names = {
        i: f"Q{i + 1} ({edges[i]:g}-{edges[i + 1]:g})" for i in range(len(edges) - 1)
    }
    return codes.map(names)


def most_common_partition(
    counts: pd.Series, top_k: int = CALL_TYPE_TOP_K, other_label: str = OTHER_LABEL
) -> Dict[Any, Any]:
    """
    Turn a category-count table into a partition rule.

    The top_k most frequent categories (with a non-zero count) keep their own
    name; everything else maps to other_label. Ties keep table order.
    """
    counts = pd.Series(counts).sort_values(ascending=False, kind="mergesort")
    kept = set(counts[counts > 0].head(max(0, int(top_k))).index)
    return {cat: (cat if cat in kept else other_label) for cat in counts.index}


def derive_call_type(
    samples: pd.DataFrame,
    flag_columns: Optional[Sequence[str]] = None,
    top_k: int = CALL_TYPE_TOP_K,
) -> pd.Series:
    """
    Derive one call-type category per encounter from 0/1 flag columns.

    An encounter with several flags takes the flag that is most common in the
    whole table; the result is then passed through most_common_partition.
    Encounters without any flag are reported as 'Other'.
    """
    if flag_columns is None:
        flag_columns = [c for c in samples.columns if c.startswith(CALL_TYPE_PREFIX)]
    if not flag_columns:
        return pd.Series(OTHER_LABEL, index=samples.index, dtype=object)

    names = [
        c[len(CALL_TYPE_PREFIX) :] if c.startswith(CALL_TYPE_PREFIX) else c
        for c in flag_columns
    ]
    flags = samples[list(flag_columns)].apply(pd.to_numeric, errors="coerce").fillna(0)
    flags = (flags > 0).astype(int)
    flags.columns = names

    counts = flags.sum(axis=0)
    rule = most_common_partition(counts, top_k=top_k)
    by_frequency = flags[counts.sort_values(ascending=False, kind="mergesort").index]
    primary = by_frequency.idxmax(axis=1).map(rule)
    return primary.where(by_frequency.any(axis=1), OTHER_LABEL).astype(object)


def build_grouping_columns(
    samples: pd.DataFrame, top_k: int = CALL_TYPE_TOP_K
) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "age_group": age_quartiles(samples[AGE_COL]),
            GENDER_COL: samples[GENDER_COL].astype(object),
            PRIORITY_COL: samples[PRIORITY_COL].astype(object),
            "call_type": derive_call_type(samples, top_k=top_k),
        },
        index=samples.index,
    )


def build_predictor_table(
    samples: pd.DataFrame, model: Dict[str, Any]
) -> Dict[str, np.ndarray]:
    """Overall score, dispatch priority and one p_<outcome> per sub-model."""
    predictors = {
        SCORE_KEY: np.asarray(model[SCORE_KEY], dtype=float),
        PRIORITY_COL: pd.to_numeric(samples[PRIORITY_COL], errors="coerce").to_numpy(
            dtype=float
        ),
    }
    for name in SUBMODEL_ORDER:
        predictors[SUBMODEL_PREFIX + name] = np.asarray(
            model["submodels"][name], dtype=float
        )
    return predictors


# ---------------------------
# Bootstrap confidence intervals
# ---------------------------


def auc_statistic(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    return float(roc_auc_score(y_true, y_pred))


def mean_absolute_error_statistic(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    return float(np.mean(np.abs(y_true - y_pred)))


def bootstrap_ci(
    y_true,
    y_pred,
    statistic: Callable[[np.ndarray, np.ndarray], float] = auc_statistic,
    n_bootstrap: int = N_BOOTSTRAP,
    ci: float = CI_LEVEL,
    rng: Optional[np.random.RandomState] = None,
) -> Dict[str, Any]:
    """
    Non-parametric percentile bootstrap for a paired statistic.

    Resamples (label, prediction) pairs with replacement, size N, recomputes
    the statistic per resample and takes empirical percentiles of the
    resample distribution.

    References:
        - Efron B, Tibshirani R. Bootstrap methods for standard errors,
          confidence intervals, and other measures of statistical accuracy.
          Statistical Science 1986;1:54-77.
        - Carpenter J, Bithell J. Bootstrap confidence intervals: when, which,
          what? Statistics in Medicine 2000;19:1141-64.

    Args:
        y_true: Binary labels (NaN allowed, dropped pairwise)
        y_pred: Predictions aligned with y_true
        statistic: f(y_true, y_pred) -> float
        n_bootstrap: Number of resamples
        ci: Confidence level (0.95 for a 95% CI)
        rng: Random source; a fresh RandomState(RANDOM_STATE) when omitted

    Returns:
        Dictionary with estimate, ci_low, ci_high, n, n_valid, n_bootstrap.
        All values are NaN when N < 2 or the labels have zero variance.
    """
    y_true, y_pred = _paired(y_true, y_pred)
    n = len(y_true)
    result = {
        "estimate": float("nan"),
        "ci_low": float("nan"),
        "ci_high": float("nan"),
        "n": int(n),
        "n_valid": 0,
        "n_bootstrap": int(n_bootstrap),
    }
    if not _has_both_classes(y_true):
        return result

    if rng is None:
        rng = np.random.RandomState(RANDOM_STATE)

    result["estimate"] = float(statistic(y_true, y_pred))

    values = []
    for _ in range(n_bootstrap):
        idx = rng.randint(0, n, size=n)
        y_boot = y_true[idx]
        # Undefined for a single-class resample
        if y_boot.min() == y_boot.max():
            continue
        try:
            value = statistic(y_boot, y_pred[idx])
        except ValueError:
            continue
        if np.isfinite(value):
            values.append(value)

    result["n_valid"] = len(values)
    if not values:
        return result
    alpha = (1.0 - ci) / 2.0
    low, high = np.percentile(values, [alpha * 100.0, (1.0 - alpha) * 100.0])
    result["ci_low"] = float(low)
    result["ci_high"] = float(high)
    return result


def bootstrap_auc_ci(
    y_true,
    y_prob,
    n_bootstrap: int = N_BOOTSTRAP,
    ci: float = CI_LEVEL,
    rng: Optional[np.random.RandomState] = None,
) -> Tuple[float, float]:
    """Bootstrap CI for the AUC as (lower, upper); NaN when undefined."""
    res = bootstrap_ci(y_true, y_prob, auc_statistic, n_bootstrap, ci, rng)
    return res["ci_low"], res["ci_high"]


# ---------------------------
# ROC / AUC
# ---------------------------


def orient_scores(y_true, scores, direction: str = ">") -> Tuple[np.ndarray, bool]:
    """
    Orient a predictor so that higher values mean higher risk.

    direction ">" keeps the scores, "<" negates them, "auto" negates them
    when controls have a higher median than cases.

    Returns:
        (oriented scores, flipped)
    """
    scores = np.asarray(scores, dtype=float)
    if direction == ">":
        return scores, False
    if direction == "<":
        return -scores, True
    if direction != "auto":
        raise ValueError(f"Unknown ROC direction: {direction!r}")

    y, s = _paired(y_true, scores)
    cases, controls = s[y == 1], s[y == 0]
    if cases.size and controls.size and np.median(controls) > np.median(cases):
        return -scores, True
    return scores, False


def roc_points(y_true, y_score) -> pd.DataFrame:
    """
    ROC curve at every distinct predictor value.

    Thresholds are the sorted unique scores (ties share a threshold). At
    threshold t a case is called positive when score >= t, so sensitivity is
    non-increasing and specificity non-decreasing as t grows.
    """
    y_true, y_score = _paired(y_true, y_score)
    thresholds = np.unique(y_score)
    cases = np.sort(y_score[y_true == 1])
    controls = np.sort(y_score[y_true == 0])

    if cases.size:
        sensitivity = 1.0 - np.searchsorted(cases, thresholds, side="left") / cases.size
    else:
        sensitivity = np.full(thresholds.shape, np.nan)
    if controls.size:
        specificity = np.searchsorted(controls, thresholds, side="left") / controls.size
    else:
        specificity = np.full(thresholds.shape, np.nan)

    return pd.DataFrame(
        {
            "threshold": thresholds,
            "sensitivity": sensitivity,
            "specificity": specificity,
        }
    )


def evaluate_roc(
    y_true,
    y_score,
    direction: str = ">",
    n_bootstrap: int = N_BOOTSTRAP,
    ci: float = CI_LEVEL,
    rng: Optional[np.random.RandomState] = None,
) -> Optional[Dict[str, Any]]:
    """
    ROC curve and AUC with bootstrap CI for one (label, predictor) pair.

    Returns None when the pair has fewer than two rows or a single observed
    class (undefined AUC). A predictor with one distinct value yields a
    single-point curve and is flagged informative=False. Curve thresholds are
    on the oriented scale (negated when flipped=True).
    """
    y, s = _paired(y_true, y_score)
    if not _has_both_classes(y):
        return None

    oriented, flipped = orient_scores(y, s, direction)
    boot = bootstrap_ci(y, oriented, auc_statistic, n_bootstrap, ci, rng)
    return {
        "n": int(len(y)),
        "n_events": int(y.sum()),
        "auc": boot["estimate"],
        "ci_low": boot["ci_low"],
        "ci_high": boot["ci_high"],
        "flipped": flipped,
        "informative": bool(np.unique(oriented).size > 1),
        "curve": roc_points(y, oriented),
    }


def compute_auc_table(
    labels: pd.DataFrame,
    predictors: Dict[str, np.ndarray],
    outcomes: Sequence[str] = OUTCOMES,
    directions: Optional[Dict[str, str]] = None,
    n_bootstrap: int = N_BOOTSTRAP,
    ci: float = CI_LEVEL,
    rng: Optional[np.random.RandomState] = None,
    audit: Optional[AuditLog] = None,
) -> Tuple[pd.DataFrame, Dict[Tuple[str, str], pd.DataFrame]]:
    """
    AUC with bootstrap CI for every outcome x predictor pair.

    Returns:
        (long AUC table, {(outcome, predictor): ROC curve})
    """
    directions = PREDICTOR_DIRECTIONS if directions is None else directions
    rows = []
    curves: Dict[Tuple[str, str], pd.DataFrame] = {}

    for outcome in outcomes:
        y = labels[outcome].to_numpy(dtype=float)
        for name, scores in predictors.items():
            res = evaluate_roc(
                y, scores, directions.get(name, ">"), n_bootstrap, ci, rng
            )
            if res is None:
                if audit:
                    audit.log(
                        "AUC_PAIR_SKIPPED",
                        {
                            "outcome": outcome,
                            "predictor": name,
                            "reason": "undefined_auc",
                        },
                    )
                continue
            if not res["informative"] and audit:
                audit.log(
                    "AUC_PAIR_NON_INFORMATIVE", {"outcome": outcome, "predictor": name}
                )
            curves[(outcome, name)] = res.pop("curve")
            rows.append({"outcome": outcome, "predictor": name, **res})

    table = pd.DataFrame(
        rows,
        columns=[
            "outcome",
            "predictor",
            "n",
            "n_events",
            "auc",
            "ci_low",
            "ci_high",
            "flipped",
            "informative",
        ],
    )
    if audit:
        audit.log("AUC_TABLE_COMPUTED", {"n_pairs": int(len(table))})
    return table, curves


# ---------------------------
# Calibration
# ---------------------------


def fit_calibration(y_prob, y_true) -> Optional[Dict[str, Any]]:
    """
    Logistic recalibration: logit P(y=1) = intercept + slope * logit(p).

    Fitted with a Binomial GLM (statsmodels). Slope 1 and intercept 0 mean
    perfect calibration.

    Reference:
    - Van Calster B, et al. Calibration: the Achilles heel of
      predictive analytics. BMC Med 2019;17(1):230.

    Returns:
        Dictionary with slope, intercept, the fitted result and the range of
        observed predictions; None when the fit is not possible.
    """
    y_true, y_prob = _paired(y_true, y_prob)
    if not _has_both_classes(y_true):
        return None
    p = np.clip(y_prob, PROB_EPS, 1 - PROB_EPS)
    lp = logit(p)
    if np.ptp(lp) == 0:
        return None

    X = sm.add_constant(lp, has_constant="add")
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            result = sm.GLM(y_true, X, family=sm.families.Binomial()).fit()
    except (PerfectSeparationError, np.linalg.LinAlgError, ValueError):
        return None

    intercept, slope = (float(v) for v in result.params)
    if not result.converged or not (np.isfinite(intercept) and np.isfinite(slope)):
        return None
    return {
        "intercept": intercept,
        "slope": slope,
        "result": result,
        "p_min": float(p.min()),
        "p_max": float(p.max()),
    }


def calibration_curve_points(
    fit: Dict[str, Any], grid: np.ndarray = CALIBRATION_GRID
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Fitted observed probability on the grid points inside the observed
    prediction range (the whole grid when none fall inside).
    """
    inside = grid[(grid >= fit["p_min"]) & (grid <= fit["p_max"])]
    if inside.size == 0:
        inside = grid
    fitted = expit(fit["intercept"] + fit["slope"] * logit(inside))
    return inside, fitted


def mean_absolute_calibration_error(
    fit: Dict[str, Any], grid: np.ndarray = CALIBRATION_GRID
) -> float:
    points, fitted = calibration_curve_points(fit, grid)
    return float(np.mean(np.abs(fitted - points)))


def somers_dxy(y_true, y_prob) -> float:
    """Somers' Dxy rank correlation, 2 * AUC - 1."""
    y_true, y_prob = _paired(y_true, y_prob)
    if not _has_both_classes(y_true):
        return float("nan")
    return 2.0 * auc_statistic(y_true, y_prob) - 1.0


def calibration_summary(y_prob, y_true) -> Optional[Dict[str, Any]]:
    """Calibration statistics and plotting curve for one set of predictions."""
    y, p = _paired(y_true, y_prob)
    fit = fit_calibration(p, y)
    if fit is None:
        return None
    grid, curve = calibration_curve_points(fit)
    return {
        "n": int(len(y)),
        "n_events": int(y.sum()),
        "mace": mean_absolute_calibration_error(fit),
        "dxy": somers_dxy(y, p),
        "slope": fit["slope"],
        "intercept": fit["intercept"],
        "grid": grid,
        "curve": curve,
    }


def calibration_by_group(
    y_prob,
    y_true,
    groups=None,
    min_group_n: int = MIN_GROUP_N,
    grouping: str = "overall",
    audit: Optional[AuditLog] = None,
) -> List[Dict[str, Any]]:
    """
    Calibration summaries per value of one grouping variable.

    Groups with fewer than min_group_n complete rows, or with a single
    observed class, are dropped from the output. Without groups a single
    'All' summary is returned.
    """
    y_prob = np.asarray(y_prob, dtype=float)
    y_true = np.asarray(y_true, dtype=float)
    if groups is None:
        group_series = pd.Series(["All"] * len(y_prob), dtype=object)
    else:
        group_series = pd.Series(np.asarray(groups, dtype=object))
        if len(group_series) != len(y_prob):
            raise ReportInputError("Grouping variable is not aligned with predictions")

    complete = ~(np.isnan(y_prob) | np.isnan(y_true))
    summaries = []
    for value in sorted(group_series.dropna().unique(), key=str):
        mask = (group_series == value).to_numpy() & complete
        n_group = int(mask.sum())
        if n_group < min_group_n:
            if audit:
                audit.log(
                    "CALIBRATION_GROUP_DROPPED",
                    {"grouping": grouping, "group": str(value), "n": n_group},
                )
            continue
        summary = calibration_summary(y_prob[mask], y_true[mask])
        if summary is None:
            if audit:
                audit.log(
                    "CALIBRATION_FIT_SKIPPED",
                    {"grouping": grouping, "group": str(value), "n": n_group},
                )
            continue
        summaries.append({"grouping": grouping, "group": str(value), **summary})
    return summaries


# ---------------------------
# Composite scores
# ---------------------------


def validate_weights(weights, n_submodels: int) -> np.ndarray:
    """
    Raises:
        WeightConfigError: length mismatch, negative, non-finite or all-zero
    """
    w = np.asarray(weights, dtype=float).ravel()
    if w.size != n_submodels:
        raise WeightConfigError(
            f"Weight vector has {w.size} entries for {n_submodels} sub-models"
        )
    if not np.all(np.isfinite(w)):
        raise WeightConfigError(f"Weights must be finite: {w.tolist()}")
    if np.any(w < 0):
        raise WeightConfigError(f"Weights must be non-negative: {w.tolist()}")
    if not np.any(w > 0):
        raise WeightConfigError("At least one weight must be positive")
    return w


def build_composite_score(submodels, weights, use_min: bool = False) -> np.ndarray:
    """
    Combine sub-model probabilities into one score per encounter.

    Args:
        submodels: Vectors in SUBMODEL_ORDER, or a mapping keyed by sub-model name
        weights: One non-negative weight per sub-model; zero suppresses it
        use_min: Weighted minimum instead of weighted average

    Weighted average is sum(w_i * p_i) / sum(w_i). The weighted minimum is
    min(w_i / max(w) * p_i) over sub-models with w_i > 0. Weights (1, 0, 0)
    return the first sub-model unchanged in both modes.
    """
    if isinstance(submodels, Mapping):
        absent = [k for k in SUBMODEL_ORDER if k not in submodels]
        if absent:
            raise ReportInputError(f"Missing sub-models: {absent}")
        submodels = [submodels[k] for k in SUBMODEL_ORDER]

    vectors = [np.asarray(v, dtype=float).ravel() for v in submodels]
    if not vectors:
        raise ReportInputError("No sub-model vectors given")
    if len({v.size for v in vectors}) > 1:
        raise ReportInputError(
            f"Sub-model vectors differ in length: {[v.size for v in vectors]}"
        )
    w = validate_weights(weights, len(vectors))

    active = w > 0
    stacked = np.column_stack(vectors)[:, active]
    if use_min:
        return np.min(stacked * (w[active] / w.max()), axis=1)
    return stacked @ w[active] / w[active].sum()


# ---------------------------
# Multiple imputation sensitivity
# ---------------------------


def hanley_mcneil_variance(auc: float, n_pos: int, n_neg: int) -> float:
    """
    Sampling variance of the AUC.

    Reference:
    - Hanley JA, McNeil BJ. The meaning and use of the area under a receiver
      operating characteristic (ROC) curve. Radiology 1982;143:29-36.
    """
    q1 = auc / (2 - auc)
    q2 = 2 * auc**2 / (1 + auc)
    return (
        auc * (1 - auc) + (n_pos - 1) * (q1 - auc**2) + (n_neg - 1) * (q2 - auc**2)
    ) / (n_pos * n_neg)


def multiple_imputation_auc(
    labels: pd.DataFrame,
    predictor,
    outcome: str,
    features: Optional[pd.DataFrame] = None,
    n_imputations: int = MI_N_IMPUTATIONS,
    ci: float = CI_LEVEL,
    seed: int = RANDOM_STATE,
    audit: Optional[AuditLog] = None,
) -> Dict[str, Any]:
    """
    AUC under multiply imputed outcome labels, pooled with Rubin's rules.

    Missing outcomes are imputed M times with IterativeImputer
    (sample_posterior=True) from the predictor and auxiliary numeric features,
    then dichotomised at 0.5. Imputation m is seeded with seed + m.
    Within-imputation variance uses Hanley-McNeil.

    Reference:
    - White IR, et al. Multiple imputation using chained equations: issues
      and guidance for practice. Statistics in Medicine 2011;30(4):377-99.

    Returns:
        Pooled estimate with CI and the complete-case AUC, or a
        {"skipped": True, "reason": ...} dictionary.
    """
    y = labels[outcome].to_numpy(dtype=float)
    score = np.asarray(predictor, dtype=float)
    missing = np.isnan(y)
    n_missing = int(missing.sum())
    if n_missing == 0:
        return {"skipped": True, "reason": "no_missing_outcome"}
    if n_missing == len(y):
        return {"skipped": True, "reason": "no_observed_outcome"}

    frame = pd.DataFrame({"outcome": y, "predictor": score})
    if features is not None:
        numeric = features.apply(pd.to_numeric, errors="coerce").reset_index(drop=True)
        numeric = numeric.loc[:, numeric.notna().any()]
        frame = pd.concat([frame, numeric.add_prefix("x_")], axis=1)

    has_score = ~np.isnan(score)
    complete_case = float("nan")
    y_cc, s_cc = _paired(y, score)
    if _has_both_classes(y_cc):
        complete_case = auc_statistic(y_cc, s_cc)

    estimates, variances = [], []
    for m in range(n_imputations):
        imputer = IterativeImputer(
            max_iter=10, random_state=seed + m, sample_posterior=True
        )
        imputed = imputer.fit_transform(frame.to_numpy(dtype=float))
        y_m = np.where(missing, (imputed[:, 0] >= 0.5).astype(float), y)[has_score]
        s_m = score[has_score]
        if not _has_both_classes(y_m):
            continue
        auc = auc_statistic(y_m, s_m)
        n_pos = int((y_m == 1).sum())
        estimates.append(auc)
        variances.append(hanley_mcneil_variance(auc, n_pos, len(y_m) - n_pos))

    if len(estimates) < 2:
        return {"skipped": True, "reason": "insufficient_valid_imputations"}

    M = len(estimates)
    q_bar = float(np.mean(estimates))
    u_bar = float(np.mean(variances))
    b = float(np.var(estimates, ddof=1))
    total = u_bar + (1 + 1 / M) * b
    if b > 0:
        dof = (M - 1) * (1 + u_bar / ((1 + 1 / M) * b)) ** 2
        t_crit = float(stats.t.ppf(1 - (1 - ci) / 2, dof))
    else:
        dof = float("inf")
        t_crit = float(stats.norm.ppf(1 - (1 - ci) / 2))
    se = float(np.sqrt(total))

    result = {
        "skipped": False,
        "outcome": outcome,
        "n_missing": n_missing,
        "n_imputations": M,
        "complete_case_auc": complete_case,
        "pooled_auc": q_bar,
        "se": se,
        "ci_low": q_bar - t_crit * se,
        "ci_high": q_bar + t_crit * se,
        "within_var": u_bar,
        "between_var": b,
        "df": float(dof),
    }
    if audit:
        audit.log("MI_SENSITIVITY_COMPLETE", result)
    return result


# ---------------------------
# Report tables
# ---------------------------


def _n_pct(mask: pd.Series) -> str:
    n = int(mask.sum())
    return f"{n} ({100 * n / max(1, len(mask)):.1f}%)"


def _cohort_column(samples: pd.DataFrame, labels: pd.DataFrame) -> Dict[str, str]:
    col: Dict[str, str] = {"N": str(len(samples))}
    age = pd.to_numeric(samples[AGE_COL], errors="coerce")
    if age.notna().any():
        col["Age, mean (SD)"] = f"{age.mean():.1f} ({age.std():.1f})"
        q1, med, q3 = age.quantile([0.25, 0.5, 0.75])
        col["Age, median [IQR]"] = f"{med:.0f} [{q1:.0f}-{q3:.0f}]"
    for level in sorted(samples[GENDER_COL].dropna().unique(), key=str):
        col[f"Gender: {level}"] = _n_pct(samples[GENDER_COL] == level)
    for level in sorted(samples[PRIORITY_COL].dropna().unique(), key=str):
        col[f"Priority: {level}"] = _n_pct(samples[PRIORITY_COL] == level)
    for outcome in OUTCOMES:
        if outcome in labels.columns:
            col[f"Outcome: {outcome}"] = _n_pct(labels[outcome] == 1)
            col[f"Outcome missing: {outcome}"] = str(int(labels[outcome].isna().sum()))
    return col


def describe_cohort(
    samples: pd.DataFrame, labels: pd.DataFrame, outcomes: Sequence[str] = OUTCOMES
) -> pd.DataFrame:
    """Table 1: cohort characteristics overall and among each outcome's cases."""
    columns = {"All": _cohort_column(samples, labels)}
    for outcome in outcomes:
        cases = (labels[outcome] == 1).to_numpy()
        columns[f"{outcome} = 1"] = _cohort_column(samples[cases], labels[cases])
    table = pd.DataFrame(columns)
    table.index.name = "characteristic"
    return table.fillna("").reset_index()


def calibration_summary_table(
    predictors: Dict[str, np.ndarray],
    labels: pd.DataFrame,
    groupings: pd.DataFrame,
    pairs: Sequence[Tuple[str, str]] = CALIBRATION_PAIRS,
    grouping_vars: Sequence[str] = GROUPING_VARS,
    min_group_n: int = MIN_GROUP_N,
    audit: Optional[AuditLog] = None,
) -> Tuple[pd.DataFrame, Dict[Tuple[str, str, str], List[Dict[str, Any]]]]:
    """
    Long-form calibration table over grouping variables x (predictor, outcome).

    Returns:
        (long table, {(grouping, predictor, outcome): group summaries})
    """
    rows = []
    curves: Dict[Tuple[str, str, str], List[Dict[str, Any]]] = {}

    for grouping in grouping_vars:
        groups = None if grouping == "overall" else groupings[grouping]
        for predictor, outcome in pairs:
            if predictor not in predictors:
                if audit:
                    audit.log(
                        "CALIBRATION_PAIR_SKIPPED",
                        {"predictor": predictor, "reason": "unknown_predictor"},
                    )
                continue
            p = np.asarray(predictors[predictor], dtype=float)
            finite = p[np.isfinite(p)]
            if finite.size == 0:
                if audit:
                    audit.log(
                        "CALIBRATION_PAIR_SKIPPED",
                        {"predictor": predictor, "reason": "no_data"},
                    )
                continue
            if finite.min() < 0 or finite.max() > 1:
                if audit:
                    audit.log(
                        "CALIBRATION_PAIR_SKIPPED",
                        {"predictor": predictor, "reason": "not_a_probability"},
                    )
                continue
            summaries = calibration_by_group(
                p,
                labels[outcome].to_numpy(dtype=float),
                groups,
                min_group_n=min_group_n,
                grouping=grouping,
                audit=audit,
            )
            if not summaries:
                continue
            curves[(grouping, predictor, outcome)] = summaries
            for s in summaries:
                rows.append(
                    {
                        "grouping": grouping,
                        "group": s["group"],
                        "predictor": predictor,
                        "outcome": outcome,
                        "n": s["n"],
                        "n_events": s["n_events"],
                        "mace": s["mace"],
                        "dxy": s["dxy"],
                        "slope": s["slope"],
                        "intercept": s["intercept"],
                    }
                )

    long_table = pd.DataFrame(
        rows,
        columns=[
            "grouping",
            "group",
            "predictor",
            "outcome",
            "n",
            "n_events",
            "mace",
            "dxy",
            "slope",
            "intercept",
        ],
    )
    if audit:
        audit.log("CALIBRATION_TABLE_COMPUTED", {"n_rows": int(len(long_table))})
    return long_table, curves


def pivot_calibration_table(long_table: pd.DataFrame) -> pd.DataFrame:
    """One row per (predictor, grouping, group), one MACE column per outcome."""
    if long_table.empty:
        return pd.DataFrame(columns=["predictor", "grouping", "group"])
    wide = long_table.pivot_table(
        index=["predictor", "grouping", "group"],
        columns="outcome",
        values="mace",
        aggfunc="first",
    )
    wide.columns.name = None
    ordered = [o for o in OUTCOMES if o in wide.columns] + [
        c for c in wide.columns if c not in OUTCOMES
    ]
    return wide[ordered].reset_index()


def weight_sensitivity_sweep(
    labels: pd.DataFrame,
    predictor_sets: Dict[str, Dict[str, np.ndarray]],
    weight_schemes: Sequence[Dict[str, Any]] = WEIGHT_SCHEMES,
    outcomes: Sequence[str] = OUTCOMES,
    n_bootstrap: int = N_BOOTSTRAP,
    ci: float = CI_LEVEL,
    rng: Optional[np.random.RandomState] = None,
    audit: Optional[AuditLog] = None,
) -> pd.DataFrame:
    """
    Bootstrap AUC of composite scores for every (predictor set, weight scheme).

    predictor_sets maps a set name to its sub-model vectors. A scheme whose
    weights are invalid is logged and skipped; the other branches continue.
    """
    rows = []
    for set_name, submodels in predictor_sets.items():
        for scheme in weight_schemes:
            try:
                composite = build_composite_score(
                    submodels, scheme["weights"], use_min=scheme.get("use_min", False)
                )
            except WeightConfigError as e:
                print(f"   Weight scheme '{scheme['name']}' rejected: {e}")
                if audit:
                    audit.log(
                        "WEIGHT_SCHEME_REJECTED",
                        {"set": set_name, "scheme": scheme["name"], "error": str(e)},
                    )
                continue

            for outcome in outcomes:
                res = bootstrap_ci(
                    labels[outcome].to_numpy(dtype=float),
                    composite,
                    auc_statistic,
                    n_bootstrap,
                    ci,
                    rng,
                )
                if np.isnan(res["estimate"]):
                    continue
                rows.append(
                    {
                        "predictor_set": set_name,
                        "scheme": scheme["name"],
                        "weights": "/".join(f"{w:g}" for w in scheme["weights"]),
                        "use_min": bool(scheme.get("use_min", False)),
                        "outcome": outcome,
                        "n": res["n"],
                        "auc": res["estimate"],
                        "ci_low": res["ci_low"],
                        "ci_high": res["ci_high"],
                    }
                )

    table = pd.DataFrame(
        rows,
        columns=[
            "predictor_set",
            "scheme",
            "weights",
            "use_min",
            "outcome",
            "n",
            "auc",
            "ci_low",
            "ci_high",
        ],
    )
    if audit:
        audit.log("WEIGHT_SWEEP_COMPUTED", {"n_rows": int(len(table))})
    return table


def with_display_names(
    df: pd.DataFrame,
    lookup: Dict[str, str],
    columns: Sequence[str] = ("predictor", "outcome", "grouping"),
) -> pd.DataFrame:
    if not lookup or df.empty:
        return df
    out = df.copy()
    for col in columns:
        if col in out.columns:
            out[col] = out[col].map(lambda v: display_name(v, lookup))
    out.columns = [display_name(c, lookup) for c in out.columns]
    return out


# ---------------------------
# Figures
# ---------------------------


def save_roc_panels(
    curves: Dict[Tuple[str, str], pd.DataFrame],
    auc_table: pd.DataFrame,
    outcomes: Sequence[str],
    outpath: Path,
    lookup: Optional[Dict[str, str]] = None,
):
    """One ROC panel per outcome, one line per predictor."""
    lookup = lookup or {}
    fig, axes = plt.subplots(
        1, len(outcomes), figsize=(5.5 * len(outcomes), 5.5), squeeze=False
    )
    for ax, outcome in zip(axes[0], outcomes):
        for (o, predictor), curve in curves.items():
            if o != outcome:
                continue
            row = auc_table[
                (auc_table["outcome"] == outcome)
                & (auc_table["predictor"] == predictor)
            ]
            auc_val = float(row["auc"].iloc[0]) if len(row) else float("nan")
            # Anchor the curve at (0, 0) and (1, 1)
            fpr = np.concatenate([[1.0], 1 - curve["specificity"].to_numpy(), [0.0]])
            tpr = np.concatenate([[1.0], curve["sensitivity"].to_numpy(), [0.0]])
            ax.plot(
                fpr,
                tpr,
                lw=1.8,
                label=f"{display_name(predictor, lookup)} (AUC = {auc_val:.3f})",
            )
        ax.plot([0, 1], [0, 1], color="gray", lw=1, linestyle="--")
        ax.set_xlim([0.0, 1.0])
        ax.set_ylim([0.0, 1.02])
        ax.set_xlabel("1 - Specificity")
        ax.set_ylabel("Sensitivity")
        ax.set_title(display_name(outcome, lookup))
        ax.legend(loc="lower right", fontsize=7)
        ax.grid(alpha=0.3)

    outpath.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(outpath, dpi=250, bbox_inches="tight")
    plt.close(fig)


def save_calibration_panels(
    curves: Dict[Tuple[str, str, str], List[Dict[str, Any]]],
    grouping: str,
    outpath: Path,
    lookup: Optional[Dict[str, str]] = None,
) -> bool:
    """One calibration panel per (predictor, outcome), one line per group."""
    lookup = lookup or {}
    panels = [(k, v) for k, v in curves.items() if k[0] == grouping]
    if not panels:
        return False

    ncols = min(3, len(panels))
    nrows = int(np.ceil(len(panels) / ncols))
    fig, axes = plt.subplots(
        nrows, ncols, figsize=(5 * ncols, 5 * nrows), squeeze=False
    )
    palette = sns.color_palette("colorblind")
    for ax, ((_, predictor, outcome), summaries) in zip(axes.flat, panels):
        for i, s in enumerate(summaries):
            ax.plot(
                s["grid"],
                s["curve"],
                lw=1.8,
                color=palette[i % len(palette)],
                label=f"{s['group']} (n={s['n']}, MACE={s['mace']:.3f})",
            )
        ax.plot([0, 1], [0, 1], linestyle="--", color="gray", lw=1)
        ax.set_xlim([0.0, 1.0])
        ax.set_ylim([0.0, 1.0])
        ax.set_xlabel("Predicted probability")
        ax.set_ylabel("Observed probability")
        ax.set_title(
            f"{display_name(predictor, lookup)} / {display_name(outcome, lookup)}",
            fontsize=9,
        )
        ax.legend(fontsize=6, loc="upper left")
        ax.grid(alpha=0.3)
    for ax in list(axes.flat)[len(panels) :]:
        ax.axis("off")
    fig.suptitle(f"Calibration by {display_name(grouping, lookup)}")

    outpath.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(outpath, dpi=250, bbox_inches="tight")
    plt.close(fig)
    return True


def build_pdf_report(
    out_dir: Path,
    charts_dir: Path,
    auc_table: pd.DataFrame,
    sweep_table: pd.DataFrame,
    run_name: str,
    audit: AuditLog,
):
    """Assemble the summary tables and charts into TRIAGE_REPORT.pdf."""
    try:
        from fpdf import FPDF

        pdf = FPDF()

        def line(text: str, h: float = 5, align: str = "L"):
            pdf.cell(0, h, text, new_x="LMARGIN", new_y="NEXT", align=align)

        pdf.add_page()
        pdf.set_font("Helvetica", "B", 16)
        line(f"TRIAGE Validation Report: {run_name}", h=10, align="C")
        pdf.set_font("Helvetica", "", 10)
        line(f"Generated: {now_ts()} | Version: {VERSION}", h=6, align="C")
        line(f"Verification Key: {audit.get_verification_key()}", h=6, align="C")

        pdf.ln(6)
        pdf.set_font("Helvetica", "B", 12)
        line("Discrimination (AUC, bootstrap CI)", h=8)
        pdf.set_font("Helvetica", "", 9)
        for row in auc_table.itertuples(index=False):
            flag = "" if row.informative else "  [non-informative]"
            line(
                f"{row.outcome} ~ {row.predictor}: {row.auc:.3f} "
                f"[{row.ci_low:.3f}, {row.ci_high:.3f}] (n={row.n}){flag}"
            )

        if not sweep_table.empty:
            pdf.ln(4)
            pdf.set_font("Helvetica", "B", 12)
            line("Composite weight sensitivity", h=8)
            pdf.set_font("Helvetica", "", 9)
            for row in sweep_table.itertuples(index=False):
                mode = "min" if row.use_min else "mean"
                line(
                    f"{row.predictor_set}/{row.scheme} ({row.weights}, {mode}) "
                    f"{row.outcome}: {row.auc:.3f} "
                    f"[{row.ci_low:.3f}, {row.ci_high:.3f}]"
                )

        for chart_path in sorted(charts_dir.glob("*.png")):
            pdf.add_page()
            pdf.set_font("Helvetica", "B", 12)
            line(chart_path.stem.replace("_", " "), h=8, align="C")
            pdf.image(str(chart_path), x=10, y=25, w=190)

        pdf_path = out_dir / "TRIAGE_REPORT.pdf"
        pdf.output(str(pdf_path))
        audit.log("PDF_GENERATED", {"path": str(pdf_path), "n_pages": pdf.page_no()})
    except Exception as e:
        audit.log("PDF_FAILED", {"error": str(e)})


# ---------------------------
# Synthetic data
# ---------------------------


class SyntheticTriageData:
    """
    Synthetic encounters with a known logistic data-generating process.

    Used for tests and for the --demo run.
    """

    CALL_TYPES = {
        "chest_pain": 0.25,
        "dyspnea": 0.2,
        "fall": 0.18,
        "stroke": 0.12,
        "sepsis": 0.1,
        "trauma": 0.08,
        "psychiatric": 0.07,
    }

    @staticmethod
    def generate(
        n_samples: int = 1000,
        missing_label_rate: float = 0.0,
        random_state: int = RANDOM_STATE,
    ) -> Tuple[pd.DataFrame, pd.DataFrame, Dict[str, Any]]:
        """
        Returns:
            (samples, labels, model-properties document) aligned by row order.
            The document's sub-models are the true outcome probabilities; its
            "public" section holds a noisier copy.
        """
        rng = np.random.RandomState(random_state)

        age = rng.randint(10, 96, size=n_samples).astype(float)
        gender = rng.choice(["Female", "Male"], size=n_samples)
        names = list(SyntheticTriageData.CALL_TYPES)
        probs = np.array(list(SyntheticTriageData.CALL_TYPES.values()))
        call = rng.choice(len(names), size=n_samples, p=probs / probs.sum())

        severity = np.array([0.8, 0.6, 0.0, 1.0, 0.9, 0.4, -0.8])
        z = -0.5 + 0.035 * (age - 60) + severity[call] + rng.normal(0, 0.8, n_samples)

        cuts = np.quantile(z, [0.4, 0.7, 0.9])
        priority = 4 - np.digitize(z + rng.normal(0, 0.5, n_samples), cuts)

        p_adm = expit(z + 0.3)
        p_cc = expit(z - 1.8)
        p_mort = expit(z - 3.2)

        labels = pd.DataFrame(
            {
                "admission": rng.binomial(1, p_adm).astype(float),
                "critical_care": rng.binomial(1, p_cc).astype(float),
                "mortality_2d": rng.binomial(1, p_mort).astype(float),
            }
        )
        if missing_label_rate > 0:
            mask = rng.random_sample(labels.shape) < missing_label_rate
            labels = labels.mask(mask)

        samples = pd.DataFrame(
            {AGE_COL: age, GENDER_COL: gender, PRIORITY_COL: priority.astype(int)}
        )
        for i, name in enumerate(names):
            samples[CALL_TYPE_PREFIX + name] = (call == i).astype(int)
        # A few encounters carry a second call-type flag
        extra = rng.random_sample(n_samples) < 0.05
        samples.loc[extra, CALL_TYPE_PREFIX + "fall"] = 1

        score = (p_adm + p_cc + p_mort) / 3
        public = {
            "admission": expit(logit(p_adm) + rng.normal(0, 0.5, n_samples)),
            "critical_care": expit(logit(p_cc) + rng.normal(0, 0.5, n_samples)),
            "mortality_2d": expit(logit(p_mort) + rng.normal(0, 0.5, n_samples)),
        }
        properties = {
            SCORE_KEY: score.tolist(),
            "submodels": {
                "admission": p_adm.tolist(),
                "critical_care": p_cc.tolist(),
                "mortality_2d": p_mort.tolist(),
            },
            "public": {
                SCORE_KEY: (sum(public.values()) / 3).tolist(),
                "submodels": {k: v.tolist() for k, v in public.items()},
            },
        }
        return samples, labels, properties

    @staticmethod
    def save(
        samples: pd.DataFrame,
        labels: pd.DataFrame,
        properties: Dict[str, Any],
        path: Path,
    ) -> Dict[str, Path]:
        """Write the three inputs plus a lookup table; return their paths."""
        path = Path(path)
        path.mkdir(parents=True, exist_ok=True)
        paths = {
            "samples": path / "samples.csv",
            "labels": path / "labels.csv",
            "properties": path / "model_properties.json",
            "lookup": path / "lookup.csv",
        }
        write_csv(paths["samples"], samples)
        write_csv(paths["labels"], labels)
        write_json(paths["properties"], properties)
        write_csv(
            paths["lookup"],
            pd.DataFrame(
                {
                    "code": [SCORE_KEY, PRIORITY_COL, *OUTCOMES],
                    "display_name": [
                        "Risk score",
                        "Dispatch priority",
                        "Hospital admission",
                        "Critical care",
                        "Two-day mortality",
                    ],
                }
            ),
        )
        return paths


# ---------------------------
# Report driver
# ---------------------------


def run_triage_report(
    samples_path: Path,
    labels_path: Path,
    properties_path: Path,
    output_root: Path,
    lookup_path: Optional[Path] = None,
    session_config: Optional[Dict[str, Any]] = None,
    run_name: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Full validation report for one dataset.

    The inclusion-criteria and public-release-model switches arrive through
    session_config (or TRIAGE_* environment variables) and are passed down
    explicitly. One RandomState is seeded here and shared by every bootstrap,
    so re-running with the same inputs reproduces every interval.

    Raises:
        ReportInputError: misaligned or malformed inputs (run aborted)
    """
    settings = resolve_settings(session_config)
    samples_path, labels_path = Path(samples_path), Path(labels_path)
    properties_path = Path(properties_path)
    run_name = safe_name(run_name or samples_path.stem)

    out_dir = Path(output_root) / f"{run_name}_Report"
    tables_dir = out_dir / "Tables"
    charts_dir = out_dir / "Charts"
    tables_dir.mkdir(parents=True, exist_ok=True)
    charts_dir.mkdir(parents=True, exist_ok=True)

    audit = AuditLog(out_dir / "TRIAGE_RUN_LOG.jsonl")
    audit.log(
        "RUN_START",
        {
            "samples": str(samples_path),
            "labels": str(labels_path),
            "properties": str(properties_path),
            "lookup": str(lookup_path) if lookup_path else None,
            "output_dir": str(out_dir),
            "settings": settings,
            "versions": get_versions(),
        },
    )

    print(f"\n{'=' * 70}\nTRIAGE Report: {run_name}\n{'=' * 70}")
    print(f"Verification Key: {audit.get_verification_key()}")
    print("-" * 70)

    rng = np.random.RandomState(settings["seed"])

    try:
        samples = load_samples(samples_path)
        labels = load_labels(labels_path)
        properties = load_model_properties(properties_path)
        lookup = load_display_names(Path(lookup_path) if lookup_path else None)
        validate_alignment(samples, labels, properties)
        model = select_model(properties, settings["public_model"])
    except (ReportInputError, FileNotFoundError) as e:
        audit.log("RUN_ABORTED", {"error": str(e)})
        audit.finalize_session()
        print(f"ERROR: {e}")
        raise

    audit.log(
        "DATA_LOADED",
        {
            "rows": int(len(samples)),
            "sample_cols": int(samples.shape[1]),
            "public_model": bool(settings["public_model"]),
        },
    )

    if settings["apply_inclusion"]:
        samples, labels, properties = apply_inclusion_criteria(
            samples,
            labels,
            properties,
            min_age=settings["inclusion_min_age"],
            public_model=settings["public_model"],
            audit=audit,
        )
        model = select_model(properties, settings["public_model"])
        print(f" Inclusion criteria applied: {len(samples)} encounters remain")

    if len(samples) == 0:
        audit.log("NO_ELIGIBLE_ENCOUNTERS", {"reason": "empty_cohort"})
        session = audit.finalize_session()
        print("No encounters left to analyse; report not produced.")
        return {
            "status": "no_eligible_encounters",
            "output_dir": str(out_dir),
            "n_samples": 0,
            "tables": {},
            "verification_key": session["verification_key"],
            "integrity_hash": session["integrity_hash"],
        }

    groupings = build_grouping_columns(samples, settings["call_type_top_k"])
    predictors = build_predictor_table(samples, model)

    print(" Descriptive statistics...")
    table1 = describe_cohort(samples, labels)

    print(" ROC / AUC with bootstrap CIs...")
    auc_table, roc_curves = compute_auc_table(
        labels,
        predictors,
        n_bootstrap=settings["n_bootstrap"],
        ci=settings["ci"],
        rng=rng,
        audit=audit,
    )

    print(" Calibration by subgroup...")
    cal_long, cal_curves = calibration_summary_table(
        predictors,
        labels,
        groupings,
        min_group_n=settings["min_group_n"],
        audit=audit,
    )
    cal_wide = pivot_calibration_table(cal_long)

    print(" Composite weight sensitivity...")
    predictor_sets = {"full": properties["submodels"]}
    if properties.get("public") is not None:
        predictor_sets["public"] = properties["public"]["submodels"]
    sweep = weight_sensitivity_sweep(
        labels,
        predictor_sets,
        n_bootstrap=settings["n_bootstrap"],
        ci=settings["ci"],
        rng=rng,
        audit=audit,
    )

    print(" Multiple imputation of missing outcomes...")
    mi_rows = []
    aux = samples[[AGE_COL, PRIORITY_COL]]
    for outcome in OUTCOMES:
        res = multiple_imputation_auc(
            labels,
            predictors[SCORE_KEY],
            outcome,
            features=aux,
            n_imputations=settings["n_imputations"],
            ci=settings["ci"],
            seed=settings["seed"],
            audit=audit,
        )
        if res.get("skipped"):
            audit.log("MI_SENSITIVITY_SKIPPED", {"outcome": outcome, **res})
            continue
        mi_rows.append(res)
    mi_table = pd.DataFrame(mi_rows)

    tables = {
        "Table1_Descriptives": table1,
        "AUC_Table": auc_table,
        "Calibration_Long": cal_long,
        "Calibration_MACE_Wide": cal_wide,
        "Weight_Sensitivity": sweep,
        "MI_Sensitivity": mi_table,
    }
    for name, df in tables.items():
        write_csv(tables_dir / f"{name}.csv", with_display_names(df, lookup))
        audit.log("TABLE_EXPORT", {"table": name, "rows": int(len(df))})

    if settings["make_plots"]:
        print(" Figures...")
        try:
            save_roc_panels(
                roc_curves, auc_table, OUTCOMES, charts_dir / "ROC_Curves.png", lookup
            )
            for grouping in GROUPING_VARS:
                save_calibration_panels(
                    cal_curves,
                    grouping,
                    charts_dir / f"Calibration_{safe_name(grouping)}.png",
                    lookup,
                )
            audit.log("FIGURES_SAVED", {"charts_dir": str(charts_dir)})
        except Exception as e:
            audit.log("FIGURES_FAILED", {"error": str(e)})
            print(f"Warning: figures failed: {e}")

    if settings["make_pdf"]:
        build_pdf_report(out_dir, charts_dir, auc_table, sweep, run_name, audit)

    session = audit.finalize_session()
    print(f"Report written to {out_dir}")
    return {
        "status": "success",
        "output_dir": str(out_dir),
        "n_samples": int(len(samples)),
        "tables": tables,
        "verification_key": session["verification_key"],
        "integrity_hash": session["integrity_hash"],
    }


# ---------------------------
# Entry point
# ---------------------------


def _parse_cli_args(argv: Sequence[str]) -> Dict[str, Any]:
    """Parse --key=value and bare --flag arguments."""
    args: Dict[str, Any] = {}
    for arg in argv:
        if not arg.startswith("--"):
            print(f"Ignoring argument: {arg}")
            continue
        key, sep, value = arg[2:].partition("=")
        args[key.replace("-", "_")] = value if sep else True
    return args


# --key=value options passed to resolve_settings
CLI_SETTINGS = ("n_bootstrap", "seed", "min_group_n", "ci")


def main(argv: Optional[Sequence[str]] = None) -> int:
    np.random.seed(RANDOM_STATE)
    sns.set_theme(style="white", context="paper", font_scale=1.1)

    args = _parse_cli_args(sys.argv[1:] if argv is None else argv)
    print("=" * 70 + "\nTRIAGE validation report\n" + "=" * 70)

    if args.get("help"):
        print(
            "Usage: TRIAGE.py --samples=PATH --labels=PATH --properties=PATH\n"
            "                 [--lookup=PATH] [--output=DIR] [--public]\n"
            "                 [--no-inclusion] [--n-bootstrap=N] [--seed=N]\n"
            "                 [--min-group-n=N] [--ci=LEVEL]\n"
            "       TRIAGE.py --demo [--output=DIR]"
        )
        return 0

    output_root = Path(args.get("output") or OUTPUT_ROOT_DEFAULT).expanduser().resolve()
    session_config: Dict[str, Any] = {}
    if args.get("public"):
        session_config["public_model"] = True
    if args.get("no_inclusion"):
        session_config["apply_inclusion"] = False
    for key in CLI_SETTINGS:
        if args.get(key):
            session_config[key] = args[key]
    try:
        resolve_settings(session_config)
    except ReportInputError as e:
        print(f"REPORT ABORTED: {e}")
        return 1

    if args.get("demo"):
        samples, labels, properties = SyntheticTriageData.generate(
            n_samples=2000, missing_label_rate=0.03
        )
        paths = SyntheticTriageData.save(
            samples, labels, properties, output_root / "synthetic_input"
        )
        args.update({k: str(v) for k, v in paths.items()})

    for key in ("samples", "labels", "properties"):
        if not args.get(key) and sys.stdin.isatty():
            args[key] = input(f"{key.upper()} PATH> ").strip()
        if not args.get(key):
            print(f"Missing --{key}=PATH (see --help)")
            return 2

    try:
        result = run_triage_report(
            Path(args["samples"]).expanduser(),
            Path(args["labels"]).expanduser(),
            Path(args["properties"]).expanduser(),
            output_root,
            lookup_path=(
                Path(args["lookup"]).expanduser() if args.get("lookup") else None
            ),
            session_config=session_config or None,
        )
    except (ReportInputError, FileNotFoundError) as e:
        print(f"REPORT ABORTED: {e}")
        return 1

    if result["status"] != "success":
        print(f"REPORT NOT PRODUCED: {result['status']}")
        return 1

    print(
        "=" * 70
        + "\nREPORT COMPLETE\nResults folder: "
        + str(output_root)
        + "\n"
        + "=" * 70
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
