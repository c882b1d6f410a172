import numpy as np
import pandas as pd
import pytest

from fire_utils import (
    LEAD_TIMES, WEATHER_COLUMNS, WEATHER_VARS, build_synthetic_dataframe,
    InsufficientStrataError, SchemaError,
)
from preprocessing import (
    CLEAN_COLUMNS, FireCleaner, normalize_records, repeated_kfold_indices, stratified_split,
    month_number,
)


def _normalized(n_rows=20, seed=1, **kwargs):
    return normalize_records(build_synthetic_dataframe(n_rows=n_rows, seed=seed, **kwargs))


def test_normalize_assigns_region_and_year_offset():
    raw = build_synthetic_dataframe(n_rows=50, seed=3)
    out = normalize_records(raw, base_year=1990)
    assert out['region'].notna().all()
    assert set(out['region']) <= {'West', 'Southwest', 'Midwest', 'Southeast', 'Northeast'}
    assert (out.loc[raw['state'] == 'CA', 'region'] == 'West').all()
    assert (out['year_offset'] == raw['disc_pre_year'] - 1990).all()
    assert 'region' not in raw.columns


def test_normalize_defaults_base_year_to_minimum():
    out = _normalized(n_rows=50)
    assert out['year_offset'].min() == 0


def test_normalize_rejects_unknown_state():
    raw = build_synthetic_dataframe(n_rows=5, seed=3)
    raw.loc[0, 'state'] = 'ZZ'
    with pytest.raises(SchemaError, match='ZZ'):
        normalize_records(raw)


def test_cleaner_output_columns_and_does_not_mutate_input():
    df = _normalized()
    before = df.copy()
    out = FireCleaner().transform(df)
    assert list(out.columns) == CLEAN_COLUMNS
    assert 'discovery_month' not in out.columns
    assert 'disc_clean_date' not in out.columns
    pd.testing.assert_frame_equal(df, before)


def test_cleaner_maps_vegetation_and_season():
    df = _normalized()
    df['Vegetation'] = 12
    df['discovery_month'] = ['Jul'] * 10 + [1] * 10
    out = FireCleaner().transform(df)
    assert (out['vegetation'] == 'Open Shrubland').all()
    assert (out['season'].iloc[:10] == 'Summer').all()
    assert (out['season'].iloc[10:] == 'Winter').all()


def test_cleaner_fails_on_unmapped_vegetation():
    df = _normalized()
    df.loc[3, 'Vegetation'] = 0
    with pytest.raises(SchemaError, match='vegetation'):
        FireCleaner().transform(df)


def test_cleaner_fails_on_missing_column():
    df = _normalized().drop(columns=['Hum_pre_7'])
    with pytest.raises(SchemaError, match='Hum_pre_7'):
        FireCleaner().transform(df)


def test_month_number_parses_names_and_numbers():
    assert month_number('Feb') == 2
    assert month_number('september') == 9
    assert month_number(12) == 12
    assert month_number('7') == 7
    with pytest.raises(SchemaError):
        month_number('Smarch')
    with pytest.raises(SchemaError):
        month_number(13)


def test_cleaner_drops_records_without_weather_source():
    df = _normalized()
    df.loc[0, 'weather_file'] = np.nan
    df.loc[1, 'weather_file'] = 'File Not Found'
    cleaner = FireCleaner()
    out = cleaner.transform(df)
    assert len(out) == len(df) - 2
    assert cleaner.rows_without_weather_ == 2


def test_all_zero_weather_record_becomes_fully_missing():
    df = _normalized()
    df.loc[5, WEATHER_COLUMNS] = 0.0
    out = FireCleaner().transform(df)
    assert out.loc[5, WEATHER_COLUMNS].isna().all()
    assert out.drop(index=5)[WEATHER_COLUMNS].notna().all().all()


def test_zero_precipitation_kept_when_other_readings_present():
    df = _normalized()
    df.loc[2, 'Prec_pre_30'] = 0.0
    out = FireCleaner().transform(df)
    assert out.loc[2, 'Prec_pre_30'] == 0.0


def test_precipitation_masked_when_trio_missing_even_if_nonzero():
    df = _normalized()
    df.loc[4, ['Temp_cont', 'Hum_cont', 'Wind_cont']] = 0.0
    df.loc[4, 'Prec_cont'] = 12.5
    out = FireCleaner().transform(df)
    assert np.isnan(out.loc[4, 'Prec_cont'])
    assert out.loc[4, 'Prec_pre_7'] == pytest.approx(df.loc[4, 'Prec_pre_7'])


def test_partial_trio_missing_keeps_precipitation():
    df = _normalized()
    df.loc[6, ['Temp_pre_15', 'Hum_pre_15']] = 0.0
    out = FireCleaner().transform(df)
    assert out.loc[6, ['Temp_pre_15', 'Hum_pre_15']].isna().all()
    assert out.loc[6, 'Prec_pre_15'] == pytest.approx(df.loc[6, 'Prec_pre_15'])


def test_precipitation_missing_iff_trio_missing():
    df = _normalized(n_rows=500, seed=11, missing_rate=0.3)
    # Mix in stray blanks so both directions of the rule get exercised
    df.loc[::7, 'Prec_pre_30'] = np.nan
    df.loc[::11, 'Wind_pre_7'] = 0.0
    out = FireCleaner().transform(df)
    for lead in LEAD_TIMES:
        trio_missing = out[[f'{v}_{lead}' for v in WEATHER_VARS if v != 'Prec']].isna().all(axis=1)
        prec_missing = out[f'Prec_{lead}'].isna()
        assert (prec_missing == trio_missing).all()
    assert out[[c for c in WEATHER_COLUMNS if not c.startswith('Prec')]].ne(0).all().all()


def test_stratified_split_preserves_skew():
    rng = np.random.default_rng(0)
    df = pd.DataFrame({'fire_size': rng.gamma(4.0, 10.0, size=4000), 'x': np.arange(4000)})
    train, test = stratified_split(df, train_fraction=0.75, seed=5, n_strata=10)
    whole = df['fire_size'].skew()
    assert abs(train['fire_size'].skew() - whole) < 0.3
    assert abs(test['fire_size'].skew() - whole) < 0.3
    assert abs(test['fire_size'].median() / df['fire_size'].median() - 1) < 0.05


def test_heavy_tailed_split_keeps_quantile_shares():
    rng = np.random.default_rng(0)
    df = pd.DataFrame({'fire_size': rng.lognormal(0.0, 2.0, size=4000), 'x': np.arange(4000)})
    train, test = stratified_split(df, train_fraction=0.75, seed=5)
    # Sample skew of the extreme tail is not preserved, but each quintile keeps its share
    quintile = pd.qcut(df['fire_size'], q=5, labels=False)
    for part in (train, test):
        shares = quintile.loc[part.index].value_counts(normalize=True).sort_index()
        np.testing.assert_allclose(shares.to_numpy(), np.full(5, 0.2))


def test_stratified_split_is_disjoint_and_complete():
    df = pd.DataFrame({'fire_size': np.linspace(0.1, 100, 200), 'x': np.arange(200)})
    train, test = stratified_split(df, train_fraction=0.75, seed=1)
    assert set(train['x']).isdisjoint(test['x'])
    assert len(train) + len(test) == len(df)
    assert len(train) == 150


def test_stratified_split_is_deterministic_per_seed():
    df = pd.DataFrame({'fire_size': np.linspace(0.1, 100, 200)})
    a, _ = stratified_split(df, seed=3)
    b, _ = stratified_split(df, seed=3)
    c, _ = stratified_split(df, seed=4)
    assert a.index.equals(b.index)
    assert not a.index.equals(c.index)


def test_stratified_split_reports_tiny_strata():
    df = pd.DataFrame({'fire_size': [1.0, 2.0, 3.0]})
    with pytest.raises(InsufficientStrataError, match='Stratum'):
        stratified_split(df, train_fraction=0.75, seed=1, n_strata=3)


def test_stratified_split_rejects_bad_fraction():
    df = pd.DataFrame({'fire_size': np.arange(10.0)})
    with pytest.raises(ValueError):
        stratified_split(df, train_fraction=1.0)


def test_repeated_kfold_covers_training_rows_only():
    train = pd.DataFrame({'fire_size': np.arange(40.0)})
    folds = repeated_kfold_indices(train, n_splits=4, n_repeats=2, seed=0)
    assert len(folds) == 8
    for fit_idx, val_idx in folds:
        assert max(fit_idx.max(), val_idx.max()) < len(train)
        assert set(fit_idx).isdisjoint(val_idx)
        assert len(fit_idx) + len(val_idx) == len(train)
