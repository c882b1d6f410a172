import math
import os
import numpy as np
import pandas as pd
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from sklearn.model_selection import RepeatedKFold

from fire_utils import (
    LEAD_TIMES, TARGET, WEATHER_COLUMNS,
    InsufficientStrataError, MissingValuesError, SchemaError,
)
from pca_imputer import reduce_partition


REGIONS = {
    'West': ['WA', 'OR', 'CA', 'NV', 'ID', 'MT', 'WY', 'UT', 'CO', 'AK', 'HI'],
    'Southwest': ['AZ', 'NM', 'TX', 'OK'],
    'Midwest': ['ND', 'SD', 'NE', 'KS', 'MN', 'IA', 'MO', 'WI', 'IL', 'IN', 'MI', 'OH'],
    'Southeast': ['AR', 'LA', 'MS', 'AL', 'GA', 'FL', 'SC', 'NC', 'TN', 'KY', 'VA', 'WV', 'PR'],
    'Northeast': ['PA', 'NY', 'NJ', 'DE', 'MD', 'DC', 'CT', 'RI', 'MA', 'VT', 'NH', 'ME'],
}
STATE_TO_REGION = {state: region for region, states in REGIONS.items() for state in states}

VEGETATION_LABELS = {
    4: 'Temperate Evergreen Needleleaf Forest',
    9: 'Grassland/Steppe',
    12: 'Open Shrubland',
    14: 'Desert',
    15: 'Polar Desert/Rock/Ice',
    16: 'Secondary Tropical Evergreen Broadleaf Forest',
}

MONTHS = ['jan', 'feb', 'mar', 'apr', 'may', 'jun', 'jul', 'aug', 'sep', 'oct', 'nov', 'dec']
SEASON_BY_MONTH = {
    12: 'Winter', 1: 'Winter', 2: 'Winter',
    3: 'Spring', 4: 'Spring', 5: 'Spring',
    6: 'Summer', 7: 'Summer', 8: 'Summer',
    9: 'Fall', 10: 'Fall', 11: 'Fall',
}

MISSING_WEATHER_SOURCE = 'File Not Found'

RAW_REQUIRED = [
    TARGET, 'fire_size_class', 'fire_mag', 'stat_cause_descr', 'Vegetation', 'state', 'region',
    'year_offset', 'discovery_month', 'latitude', 'longitude', 'remoteness', 'weather_file',
] + WEATHER_COLUMNS

CLEAN_COLUMNS = [
    TARGET, 'fire_size_class', 'fire_mag', 'stat_cause_descr', 'vegetation', 'state', 'region',
    'year_offset', 'season', 'latitude', 'longitude', 'remoteness',
] + WEATHER_COLUMNS


def read_fire_data(data_dir: str, filename: str = 'FW_Veg_Rem_Combined.csv') -> pd.DataFrame:
    path = os.path.join(data_dir, filename)
    if not os.path.exists(path):
        raise FileNotFoundError(f"Required input not found: {path}")
    df = pd.read_csv(path, low_memory=False)
    # Drop pandas' exported index columns if the file carries them
    unnamed = [c for c in df.columns if str(c).startswith('Unnamed')]
    return df.drop(columns=unnamed)


def normalize_records(df: pd.DataFrame, base_year: Optional[int] = None) -> pd.DataFrame:
    for col in ['state', 'disc_pre_year']:
        if col not in df.columns:
            raise SchemaError(f"Missing required column: {col}")
    out = df.copy()
    states = out['state'].astype(str).str.strip().str.upper()
    out['region'] = states.map(STATE_TO_REGION)
    unknown = sorted(states[out['region'].isna()].unique())
    if unknown:
        raise SchemaError(f"Unmapped state codes: {unknown}")

    years = pd.to_numeric(out['disc_pre_year'], errors='coerce')
    if years.isna().any():
        raise SchemaError(f"{int(years.isna().sum())} records have no discovery year")
    if base_year is None:
        base_year = int(years.min())
    out['year_offset'] = (years - base_year).astype(int)
    return out


def month_number(value) -> int:
    if isinstance(value, str):
        key = value.strip().lower()[:3]
        if key in MONTHS:
            return MONTHS.index(key) + 1
        if key.isdigit():
            value = int(key)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise SchemaError(f"Unparseable discovery month: {value!r}") from None
    if number not in SEASON_BY_MONTH:
        raise SchemaError(f"Discovery month out of range: {value!r}")
    return number


class FireCleaner:
    def __init__(self, vegetation_labels: Optional[Dict[int, str]] = None):
        self.vegetation_labels = dict(vegetation_labels or VEGETATION_LABELS)
        self.rows_without_weather_: int = 0

    def _map_vegetation(self, codes: pd.Series) -> pd.Series:
        numeric = pd.to_numeric(codes, errors='coerce')
        labels = numeric.map(self.vegetation_labels)
        unmapped = codes[labels.isna()]
        if not unmapped.empty:
            raise SchemaError(f"Unmapped vegetation codes: {sorted(unmapped.astype(str).unique())}")
        return labels

    @staticmethod
    def _apply_weather_missingness(df: pd.DataFrame) -> pd.DataFrame:
        for lead in LEAD_TIMES:
            trio = [f'Temp_{lead}', f'Hum_{lead}', f'Wind_{lead}']
            for col in trio:
                values = pd.to_numeric(df[col], errors='coerce')
                # Stations report absent readings as zero
                df[col] = values.mask(values == 0)
            prec_col = f'Prec_{lead}'
            prec = pd.to_numeric(df[prec_col], errors='coerce')
            trio_missing = df[trio].isna().all(axis=1)
            # Precipitation is missing exactly when the other three readings are
            df[prec_col] = prec.fillna(0.0).mask(trio_missing)
        return df

    def transform(self, df: pd.DataFrame) -> pd.DataFrame:
        missing = [c for c in RAW_REQUIRED if c not in df.columns]
        if missing:
            raise SchemaError(f"Missing required columns: {missing}")

        source = df['weather_file']
        has_weather = source.notna() & (source.astype(str).str.strip() != MISSING_WEATHER_SOURCE)
        self.rows_without_weather_ = int((~has_weather).sum())
        out = df.loc[has_weather].copy()

        out['vegetation'] = self._map_vegetation(out['Vegetation'])
        out['season'] = out['discovery_month'].map(month_number).map(SEASON_BY_MONTH)
        out = self._apply_weather_missingness(out)
        return out[CLEAN_COLUMNS].reset_index(drop=True)


@dataclass
class Partition:
    train: pd.DataFrame
    test: pd.DataFrame
    seed: int
    cv_folds: List[Tuple[np.ndarray, np.ndarray]] = field(default_factory=list)


def stratified_split(df: pd.DataFrame, train_fraction: float = 0.75, seed: int = 42, target: str = TARGET, n_strata: int = 5) -> Tuple[pd.DataFrame, pd.DataFrame]:
    if not 0.0 < train_fraction < 1.0:
        raise ValueError(f"train_fraction must be in (0, 1), got {train_fraction}")
    y = pd.to_numeric(df[target], errors='coerce')
    if y.isna().any():
        raise MissingValuesError(f"{int(y.isna().sum())} records have no {target}")
    if len(df) < 2:
        raise InsufficientStrataError(f"Cannot split {len(df)} records into train and test")

    # Quantile strata of the target; tied quantile edges collapse into one stratum.
    # Strata fix each partition's quantile shares, not the skew of an extreme tail
    q = max(1, min(n_strata, int(y.nunique())))
    strata = pd.qcut(y, q=q, labels=False, duplicates='drop').to_numpy()

    rng = np.random.default_rng(seed)
    train_positions = []
    for stratum in np.unique(strata):
        positions = np.flatnonzero(strata == stratum)
        n_train = math.ceil(train_fraction * len(positions))
        if n_train < 1 or n_train >= len(positions):
            edges = (float(y.iloc[positions].min()), float(y.iloc[positions].max()))
            raise InsufficientStrataError(
                f"Stratum {int(stratum)} ({target} in [{edges[0]:g}, {edges[1]:g}]) has {len(positions)} "
                f"record(s); cannot allocate both train and test members at fraction {train_fraction}"
            )
        train_positions.append(rng.permutation(positions)[:n_train])

    train_mask = np.zeros(len(df), dtype=bool)
    train_mask[np.concatenate(train_positions)] = True
    return df.iloc[np.flatnonzero(train_mask)], df.iloc[np.flatnonzero(~train_mask)]


def repeated_kfold_indices(train_df: pd.DataFrame, n_splits: int = 5, n_repeats: int = 1, seed: int = 42) -> List[Tuple[np.ndarray, np.ndarray]]:
    rkf = RepeatedKFold(n_splits=n_splits, n_repeats=n_repeats, random_state=seed)
    return list(rkf.split(np.arange(len(train_df))))


def get_split_config(cfg: Dict) -> Dict:
    split_cfg = cfg.get('split', {}) or {}
    cv_cfg = cfg.get('cv', {}) or {}
    return {
        'train_fraction': float(split_cfg.get('train_fraction', 0.75)),
        'n_strata': int(split_cfg.get('n_strata', 5)),
        'n_splits': int(cv_cfg.get('n_splits', 5)),
        'n_repeats': int(cv_cfg.get('n_repeats', 1)),
    }


def clean_records(cfg: Dict, df_raw: Optional[pd.DataFrame] = None) -> pd.DataFrame:
    data_cfg = cfg.get('data', {}) or {}
    if df_raw is None:
        df_raw = read_fire_data(cfg['paths']['data_dir'], data_cfg.get('filename', 'FW_Veg_Rem_Combined.csv'))
    normalized = normalize_records(df_raw, base_year=data_cfg.get('base_year'))
    veg = data_cfg.get('vegetation_labels')
    cleaner = FireCleaner({int(k): v for k, v in veg.items()} if veg else None)
    cleaned = cleaner.transform(normalized)
    print(f"Cleaned records: {len(cleaned)} (dropped {cleaner.rows_without_weather_} without a weather source)")
    return cleaned


def make_partition(cleaned: pd.DataFrame, cfg: Dict, seed: Optional[int] = None) -> Partition:
    seed = int(cfg.get('random_state', 42) if seed is None else seed)
    split_cfg = get_split_config(cfg)
    train, test = stratified_split(cleaned, split_cfg['train_fraction'], seed, TARGET, split_cfg['n_strata'])
    print(f"Train set: {len(train)} | Test set: {len(test)} | seed: {seed}")
    reduced = reduce_partition(Partition(train, test, seed), cfg)
    # Folds index the reduced training frame, after imputation row drops
    reduced.cv_folds = repeated_kfold_indices(reduced.train, split_cfg['n_splits'], split_cfg['n_repeats'], seed)
    return reduced


def prepare_datasets(cfg: Dict, df_raw: Optional[pd.DataFrame] = None) -> Tuple[Partition, pd.DataFrame]:
    cleaned = clean_records(cfg, df_raw)
    return make_partition(cleaned, cfg), cleaned
