"""
Grouped binomial dose-response data loader

Reads a tabular file of (log10 dose, successes, trials, strain) records,
normalizes column names, optionally keeps a single health-status subset and
builds the immutable arrays consumed by the model:

    dose = 10 ** log10dose, successes = Y, trials = N,
    strain_index = position of t in the sorted unique strain labels

CLI usage:
  python -m dose_response.data_prep.loader --data infections.csv \
      --subset-column status --subset-value healthy
"""
from __future__ import annotations

import argparse
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import numpy as np
import pandas as pd

log = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Data containers
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class ObservedCounts:
    """Observed doses, trials and successes of a single strain."""
    dose: np.ndarray
    trials: np.ndarray
    successes: np.ndarray

    @property
    def proportion(self) -> np.ndarray:
        return self.successes / self.trials


@dataclass(frozen=True)
class DoseResponseData:
    """Immutable grouped binomial observations.

    ``strain_index`` is 0-based; every table written for reporting uses the
    1-based position ``k = strain_index + 1``.
    """
    dose: np.ndarray
    trials: np.ndarray
    successes: np.ndarray
    strain_index: np.ndarray
    strain_labels: Tuple[str, ...]
    source: Optional[str] = field(default=None, compare=False)

    def __post_init__(self):
        dose = np.array(self.dose, dtype=float)
        trials = np.array(self.trials, dtype=np.int64)
        successes = np.array(self.successes, dtype=np.int64)
        strain_index = np.array(self.strain_index, dtype=np.int64)
        n = len(dose)
        if n == 0:
            raise ValueError("No observations: the dataset is empty.")
        if not (len(trials) == len(successes) == len(strain_index) == n):
            raise ValueError("dose, trials, successes and strain_index must have equal length.")
        if np.any(~np.isfinite(dose)) or np.any(dose <= 0):
            raise ValueError("All doses must be finite and strictly positive.")
        if np.any(trials <= 0):
            raise ValueError("All trial counts N must be > 0.")
        if np.any(successes < 0) or np.any(successes > trials):
            raise ValueError("Successes Y must satisfy 0 <= Y <= N.")
        k = len(self.strain_labels)
        if np.any(strain_index < 0) or np.any(strain_index >= k):
            raise ValueError(f"strain_index must lie in [0, {k - 1}].")
        for arr in (dose, trials, successes, strain_index):
            arr.setflags(write=False)
        # frozen dataclass: bypass __setattr__ to store the read-only copies
        object.__setattr__(self, "dose", dose)
        object.__setattr__(self, "trials", trials)
        object.__setattr__(self, "successes", successes)
        object.__setattr__(self, "strain_index", strain_index)
        object.__setattr__(self, "strain_labels", tuple(str(s) for s in self.strain_labels))

    @property
    def num_strains(self) -> int:
        return len(self.strain_labels)

    @property
    def num_observations(self) -> int:
        return len(self.dose)

    @property
    def max_dose(self) -> float:
        return float(self.dose.max())

    def strain_observations(self, k: int) -> ObservedCounts:
        """Observed counts of the strain at 0-based position ``k``."""
        mask = self.strain_index == k
        return ObservedCounts(
            dose=self.dose[mask],
            trials=self.trials[mask],
            successes=self.successes[mask],
        )

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            "log10dose": np.log10(self.dose),
            "Y": self.successes,
            "N": self.trials,
            "t": [self.strain_labels[k] for k in self.strain_index],
        })


# -----------------------------------------------------------------------------
# Helpers: IO and normalization
# -----------------------------------------------------------------------------

_CANONICAL_MAP = {
    "log10dose": "log10dose",
    "log10_dose": "log10dose",
    "logdose": "log10dose",
    "log_dose": "log10dose",
    "y": "Y",
    "successes": "Y",
    "infected": "Y",
    "n": "N",
    "trials": "N",
    "exposed": "N",
    "t": "t",
    "strain": "t",
    "type": "t",
}

REQUIRED_COLUMNS = ("log10dose", "Y", "N", "t")


def _slugify(s: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", s.strip().lower()).strip("_")


def _read_any(path: Path) -> pd.DataFrame:
    suffix = path.suffix.lower()
    if suffix in [".csv", ".tsv", ".txt"]:
        sep = "," if suffix == ".csv" else "\t"
        return pd.read_csv(path, sep=sep)
    if suffix in [".xlsx", ".xls"]:
        return pd.read_excel(path)
    raise ValueError(f"Unsupported file type: {path}")


def normalize_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Rename known column spellings to ``log10dose``, ``Y``, ``N`` and ``t``.

    Columns that are not recognized are kept under their slugified name so a
    subset column such as ``Health Status`` becomes ``health_status``.
    """
    mapping = {}
    for c in df.columns:
        c_slug = _slugify(str(c))
        mapping[c] = _CANONICAL_MAP.get(c_slug, c_slug)

    by_target: Dict[str, list] = {}
    for original, target in mapping.items():
        by_target.setdefault(target, []).append(str(original))
    clashes = {target: cols for target, cols in by_target.items() if len(cols) > 1}
    if clashes:
        raise ValueError(f"Several columns map to the same field: {clashes}")
    ndf = df.rename(columns=mapping).copy()

    missing = [c for c in REQUIRED_COLUMNS if c not in ndf.columns]
    if missing:
        raise ValueError(f"Missing required column(s): {missing}. Found: {list(df.columns)}")

    ndf["log10dose"] = pd.to_numeric(ndf["log10dose"], errors="coerce")
    ndf["Y"] = pd.to_numeric(ndf["Y"], errors="coerce")
    ndf["N"] = pd.to_numeric(ndf["N"], errors="coerce")
    ndf["t"] = ndf["t"].astype("string").str.strip()
    return ndf


def filter_subset(df: pd.DataFrame, column: Optional[str], value: Optional[str]) -> pd.DataFrame:
    """Keep rows whose ``column`` equals ``value`` (string comparison, case-insensitive)."""
    if column is None or value is None:
        return df
    col = _slugify(column)
    if col not in df.columns:
        raise ValueError(f"Subset column '{column}' not in data. Available: {list(df.columns)}")
    mask = df[col].astype(str).str.strip().str.lower() == str(value).strip().lower()
    out = df.loc[mask].copy()
    log.info("Subset %s == %s: kept %d of %d rows", col, value, len(out), len(df))
    return out


def _validate_rows(df: pd.DataFrame) -> pd.DataFrame:
    incomplete = df[list(REQUIRED_COLUMNS)].isna().any(axis=1)
    if incomplete.any():
        log.warning("Dropping %d row(s) with missing log10dose/Y/N/t", int(incomplete.sum()))
        df = df.loc[~incomplete].copy()

    bad_n = df["N"] <= 0
    if bad_n.any():
        raise ValueError(f"Trials N must be > 0; offending rows: {df.index[bad_n].tolist()}")
    bad_y = (df["Y"] < 0) | (df["Y"] > df["N"])
    if bad_y.any():
        raise ValueError(f"Successes must satisfy 0 <= Y <= N; offending rows: {df.index[bad_y].tolist()}")
    non_integer = (df["Y"] % 1 != 0) | (df["N"] % 1 != 0)
    if non_integer.any():
        raise ValueError(f"Y and N must be integer counts; offending rows: {df.index[non_integer].tolist()}")
    return df


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------

def build_dataset(df: pd.DataFrame, source: Optional[str] = None) -> DoseResponseData:
    """Convert a normalized frame into :class:`DoseResponseData`."""
    df = _validate_rows(df)
    if df.empty:
        raise ValueError("No observations left after filtering.")

    labels = tuple(sorted(df["t"].astype(str).unique()))
    index_of: Dict[str, int] = {s: i for i, s in enumerate(labels)}

    return DoseResponseData(
        dose=np.power(10.0, df["log10dose"].to_numpy(dtype=float)),
        trials=df["N"].to_numpy(dtype=np.int64),
        successes=df["Y"].to_numpy(dtype=np.int64),
        strain_index=df["t"].astype(str).map(index_of).to_numpy(dtype=np.int64),
        strain_labels=labels,
        source=source,
    )


def load_dose_response_csv(
    path: Union[str, Path],
    subset_column: Optional[str] = None,
    subset_value: Optional[str] = None,
) -> DoseResponseData:
    """Load, normalize and optionally subset a dose-response table.

    Parameters
    ----------
    path : str or Path
        CSV/TSV/XLSX file with log10dose, Y, N and t columns.
    subset_column, subset_value : str, optional
        Health-status filter; both must be given for filtering to apply.

    Returns
    -------
    DoseResponseData
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Dose-response data not found: {path}")

    raw = _read_any(path)
    rows = normalize_columns(raw)
    rows = filter_subset(rows, subset_column, subset_value)
    data = build_dataset(rows, source=str(path))
    log.info("Loaded %d observations across %d strains from %s",
             data.num_observations, data.num_strains, path)
    return data


def main():
    ap = argparse.ArgumentParser(description="Inspect a grouped dose-response dataset")
    ap.add_argument("--data", required=True, help="CSV/TSV/XLSX with log10dose, Y, N, t")
    ap.add_argument("--subset-column", default=None)
    ap.add_argument("--subset-value", default=None)
    args = ap.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    data = load_dose_response_csv(args.data, args.subset_column, args.subset_value)
    print(f"Loaded: observations={data.num_observations}, strains={data.num_strains}")
    for k, label in enumerate(data.strain_labels):
        obs = data.strain_observations(k)
        print(f"  [{k + 1}] {label}: {len(obs.dose)} doses, {int(obs.trials.sum())} trials, "
              f"{int(obs.successes.sum())} infected")


if __name__ == "__main__":
    main()
