from .loader import DoseResponseData, ObservedCounts, build_dataset, load_dose_response_csv, normalize_columns

__all__ = [
    "DoseResponseData",
    "ObservedCounts",
    "build_dataset",
    "load_dose_response_csv",
    "normalize_columns",
]
