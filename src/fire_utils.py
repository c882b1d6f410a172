import os
import hashlib
import time
import joblib
import yaml
import numpy as np
import pandas as pd
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence
from sklearn.metrics import mean_squared_error
from dotenv import load_dotenv


LEAD_TIMES = ['pre_30', 'pre_15', 'pre_7', 'cont']
WEATHER_VARS = ['Temp', 'Hum', 'Wind', 'Prec']
WEATHER_COLUMNS = [f'{var}_{lead}' for lead in LEAD_TIMES for var in WEATHER_VARS]
TARGET = 'fire_size'


class SchemaError(ValueError):
    """Raised when input records do not match the expected schema or codes."""


class ConvergenceError(RuntimeError):
    """Raised when iterative imputation hits its iteration cap.

    The partial result is kept on ``result`` so callers can decide whether
    to accept it or retry with a larger cap.
    """

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result


class InsufficientStrataError(ValueError):
    """Raised when a stratum cannot contribute to both train and test."""


class MissingValuesError(ValueError):
    """Raised when a model receives features or targets with missing values."""


def load_config(config_path: str) -> Dict:
    with open(config_path, 'r', encoding='utf-8') as f:
        cfg = yaml.safe_load(f) or {}
    load_dotenv(override=True)
    # Resolve paths with environment overrides if provided
    cfg_paths = cfg.get('paths', {}) or {}
    cfg_paths['data_dir'] = os.getenv('DATA_DIR', cfg_paths.get('data_dir', 'data'))
    cfg_paths['output_dir'] = os.getenv('OUTPUT_DIR', cfg_paths.get('output_dir', 'outputs'))
    cfg_paths['models_dir'] = os.getenv('MODELS_DIR', cfg_paths.get('models_dir', 'models'))
    cfg['paths'] = cfg_paths
    return cfg


def ensure_directories(output_dir: str, models_dir: str) -> None:
    os.makedirs(output_dir, exist_ok=True)
    os.makedirs(os.path.join(output_dir, 'cache'), exist_ok=True)
    os.makedirs(models_dir, exist_ok=True)


def print_environment(cfg: Dict) -> None:
    import sys
    import sklearn
    import statsmodels
    print(f"Python: {sys.version.split()[0]}")
    print(f"numpy: {np.__version__}")
    print(f"pandas: {pd.__version__}")
    print(f"scikit-learn: {sklearn.__version__}")
    print(f"statsmodels: {statsmodels.__version__}")
    print(f"random_state: {cfg.get('random_state', 42)}")


@dataclass(frozen=True)
class FeatureSpec:
    numeric: List[str] = field(default_factory=lambda: ['PC1', 'PC2', 'PC3', 'PC4', 'year_offset', 'remoteness'])
    categorical: List[str] = field(default_factory=lambda: ['vegetation', 'stat_cause_descr'])
    target: str = TARGET

    @property
    def columns(self) -> List[str]:
        return list(self.numeric) + list(self.categorical)

    @classmethod
    def from_config(cls, cfg: Dict) -> 'FeatureSpec':
        feat_cfg = cfg.get('features', {}) or {}
        default = cls()
        return cls(
            numeric=list(feat_cfg.get('numeric', default.numeric)),
            categorical=list(feat_cfg.get('categorical', default.categorical)),
            target=feat_cfg.get('target', default.target),
        )


def check_no_missing(df: pd.DataFrame, columns: Sequence[str], where: str) -> None:
    missing_cols = [c for c in columns if c not in df.columns]
    if missing_cols:
        raise SchemaError(f"{where}: required columns not present: {missing_cols}")
    counts = df[list(columns)].isna().sum()
    counts = counts[counts > 0]
    if not counts.empty:
        raise MissingValuesError(f"{where}: missing values in {counts.to_dict()}")


def encode_features(df: pd.DataFrame, spec: FeatureSpec, columns: Optional[List[str]] = None, drop_first: bool = False) -> pd.DataFrame:
    # One-hot encode categoricals; align to a reference column list when given
    X = df[spec.columns].copy()
    cats = [c for c in spec.categorical if c in X.columns]
    X = pd.get_dummies(X, columns=cats, prefix=cats, drop_first=drop_first, dtype=float)
    X = X.astype(float)
    if columns is not None:
        X = X.reindex(columns=columns, fill_value=0.0)
    return X


def rmse(y_true, y_pred) -> float:
    return float(np.sqrt(mean_squared_error(y_true, y_pred)))


def frame_fingerprint(df: pd.DataFrame) -> str:
    # Content hash of a frame, used to tell cached curves from different data apart
    hashed = pd.util.hash_pandas_object(df, index=True).to_numpy()
    return hashlib.sha1(hashed.tobytes()).hexdigest()[:16]


def cv_cache_path(output_dir: str, family: str, sweep: Sequence[int]) -> str:
    sweep = list(sweep)
    key = f"{min(sweep)}-{max(sweep)}x{len(sweep)}"
    return os.path.join(output_dir, 'cache', f"cv_{family}_{key}.csv")


def _cache_settings(settings: Optional[Dict]) -> Dict[str, str]:
    return {f"fit_{k}": '' if v is None else str(v) for k, v in sorted((settings or {}).items())}


def load_cv_cache(output_dir: str, family: str, sweep: Sequence[int], settings: Optional[Dict] = None) -> Optional[pd.DataFrame]:
    path = cv_cache_path(output_dir, family, sweep)
    if not os.path.exists(path):
        return None
    expected = _cache_settings(settings)
    cached = pd.read_csv(path, dtype={k: str for k in expected}, keep_default_na=False)
    # Cache is advisory: ignore it if it does not cover the requested sweep or was fit differently
    if sorted(cached['param'].tolist()) != sorted(int(v) for v in sweep):
        return None
    stored = {c for c in cached.columns if c.startswith('fit_')}
    if stored != set(expected):
        return None
    for col, value in expected.items():
        if (cached[col] != value).any():
            return None
    return cached.drop(columns=['family'] + sorted(stored), errors='ignore')


def write_cv_cache(table: pd.DataFrame, output_dir: str, family: str, sweep: Sequence[int], settings: Optional[Dict] = None) -> str:
    path = cv_cache_path(output_dir, family, sweep)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    out = table.copy()
    out.insert(0, 'family', family)
    for col, value in _cache_settings(settings).items():
        out[col] = value
    out.to_csv(path, index=False)
    return path


def write_table(table: pd.DataFrame, output_dir: str, name: str) -> str:
    path = os.path.join(output_dir, f"{name}.csv")
    table.to_csv(path, index=False)
    return path


def save_model(model, models_dir: str, model_name: str) -> str:
    ts = time.strftime('%Y%m%d_%H%M%S')
    path = os.path.join(models_dir, f"{model_name}_{ts}.joblib")
    joblib.dump(model, path)
    return path


def build_synthetic_dataframe(n_rows: int = 1000, seed: int = 42, noise_sd: float = 5.0, missing_rate: float = 0.0) -> pd.DataFrame:
    # Raw-schema records where fire_size depends linearly on Temp_pre_7 plus Gaussian noise
    rng = np.random.default_rng(seed)
    states = np.array(['CA', 'AZ', 'MN', 'GA', 'NY', 'OR', 'TX', 'FL'])
    months = np.array(['Jan', 'Feb', 'Mar', 'Apr', 'May', 'Jun', 'Jul', 'Aug', 'Sep', 'Oct', 'Nov', 'Dec'])
    causes = np.array(['Lightning', 'Debris Burning', 'Arson', 'Campfire'])
    veg_codes = np.array([4, 9, 12, 14, 15, 16])

    df = pd.DataFrame({
        'fire_name': [f'FIRE_{i}' for i in range(n_rows)],
        'fire_size_class': rng.choice(['B', 'C', 'D'], size=n_rows),
        'fire_mag': rng.uniform(0.1, 3.0, size=n_rows),
        'stat_cause_descr': rng.choice(causes, size=n_rows),
        'Vegetation': rng.choice(veg_codes, size=n_rows),
        'state': rng.choice(states, size=n_rows),
        'disc_pre_year': rng.integers(1992, 2016, size=n_rows),
        'discovery_month': rng.choice(months, size=n_rows),
        'disc_clean_date': '01/01/2000',
        'cont_clean_date': '01/02/2000',
        'latitude': rng.uniform(25.0, 49.0, size=n_rows),
        'longitude': rng.uniform(-124.0, -67.0, size=n_rows),
        'remoteness': rng.uniform(0.0, 1.0, size=n_rows),
        'weather_file': [f'station_{i % 50}.csv' for i in range(n_rows)],
    })

    base_temp = rng.normal(20.0, 6.0, size=n_rows)
    base_hum = rng.normal(45.0, 12.0, size=n_rows)
    base_wind = rng.normal(3.5, 1.0, size=n_rows)
    for lead in LEAD_TIMES:
        df[f'Temp_{lead}'] = base_temp + rng.normal(0.0, 1.0, size=n_rows)
        df[f'Hum_{lead}'] = np.clip(base_hum + rng.normal(0.0, 3.0, size=n_rows), 1.0, 100.0)
        df[f'Wind_{lead}'] = np.clip(base_wind + rng.normal(0.0, 0.3, size=n_rows), 0.1, None)
        df[f'Prec_{lead}'] = rng.gamma(1.5, 10.0, size=n_rows)

    df[TARGET] = 50.0 + 4.0 * df['Temp_pre_7'] + rng.normal(0.0, noise_sd, size=n_rows)

    if missing_rate > 0:
        # Knock out whole lead-time readings the way missing station data shows up (zeros)
        for lead in LEAD_TIMES:
            gone = rng.random(n_rows) < missing_rate
            for var in WEATHER_VARS:
                df.loc[gone, f'{var}_{lead}'] = 0.0
    return df
