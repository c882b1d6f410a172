import argparse
import numpy as np
import pandas as pd
import statsmodels.api as sm
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from fire_utils import (
    FeatureSpec, check_no_missing, encode_features, rmse,
    load_config, ensure_directories, print_environment, save_model, write_table,
)
from preprocessing import Partition, prepare_datasets


@dataclass(frozen=True)
class OLSFit:
    results: object  # statsmodels RegressionResultsWrapper
    selected: Tuple[str, ...]
    dropped: Tuple[str, ...]
    n_obs: int

    def predict(self, df: pd.DataFrame, spec: FeatureSpec) -> np.ndarray:
        if not self.selected:
            return np.full(len(df), float(self.results.params['const']))
        # Full dummies, then keep the selected design columns; unseen or baseline levels stay 0
        X = encode_features(df, spec, columns=list(self.selected))
        X = sm.add_constant(X, has_constant='add')
        return np.asarray(self.results.predict(X), dtype=float)


@dataclass(frozen=True)
class RegionalLinearModel:
    pooled: OLSFit
    regions: Dict[str, OLSFit]
    fallback_regions: Tuple[str, ...]
    spec: FeatureSpec
    alpha: float

    def model_for(self, region: str) -> OLSFit:
        return self.regions.get(region, self.pooled)

    def predict(self, df: pd.DataFrame, regional: bool = True) -> np.ndarray:
        if not regional:
            return self.pooled.predict(df, self.spec)
        preds = np.empty(len(df), dtype=float)
        region_values = df['region'].to_numpy()
        for region in pd.unique(region_values):
            rows = np.flatnonzero(region_values == region)
            preds[rows] = self.model_for(region).predict(df.iloc[rows], self.spec)
        return preds


def backward_eliminate(X: pd.DataFrame, y: pd.Series, alpha: float = 0.05) -> OLSFit:
    # Constant columns carry no information inside a subgroup
    columns = [c for c in X.columns if X[c].nunique() > 1]
    dropped = [c for c in X.columns if c not in columns]
    while columns:
        results = sm.OLS(y, sm.add_constant(X[columns], has_constant='add')).fit()
        pvalues = results.pvalues.drop('const').fillna(1.0)
        worst = pvalues.idxmax()
        if pvalues[worst] <= alpha:
            return OLSFit(results, tuple(columns), tuple(dropped), int(results.nobs))
        columns.remove(worst)
        dropped.append(worst)
    # Nothing significant: intercept-only model
    results = sm.OLS(y, pd.DataFrame({'const': np.ones(len(y))}, index=y.index)).fit()
    return OLSFit(results, tuple(), tuple(dropped), int(results.nobs))


def _design(df: pd.DataFrame, spec: FeatureSpec) -> Tuple[pd.DataFrame, pd.Series]:
    X = encode_features(df, spec, drop_first=True)
    y = df[spec.target].astype(float)
    return X, y


def fit_linear(partition: Partition, spec: FeatureSpec, alpha: float = 0.05, min_region_rows: Optional[int] = None) -> RegionalLinearModel:
    train = partition.train
    check_no_missing(train, spec.columns + [spec.target, 'region'], 'linear regression')

    X, y = _design(train, spec)
    pooled = backward_eliminate(X, y, alpha)
    min_rows = min_region_rows if min_region_rows is not None else X.shape[1] + 2

    regions = {}
    fallback = []
    for region, grp in train.groupby('region', sort=True):
        if len(grp) < min_rows:
            fallback.append(region)
            continue
        Xr, yr = _design(grp, spec)
        regions[region] = backward_eliminate(Xr, yr, alpha)
    if fallback:
        print(f"Regions using the pooled model (fewer than {min_rows} training rows): {fallback}")
    return RegionalLinearModel(pooled, regions, tuple(fallback), spec, alpha)


def evaluate_linear(model: RegionalLinearModel, partition: Partition, regional: bool = True) -> Dict[str, float]:
    check_no_missing(partition.test, model.spec.columns + [model.spec.target, 'region'], 'linear regression')
    target = model.spec.target
    return {
        'train_rmse': rmse(partition.train[target], model.predict(partition.train, regional)),
        'test_rmse': rmse(partition.test[target], model.predict(partition.test, regional)),
    }


def regional_rmse_table(model: RegionalLinearModel, partition: Partition) -> pd.DataFrame:
    target = model.spec.target
    rows = []
    regions = sorted(set(partition.train['region']) | set(partition.test['region']))
    for region in regions:
        tr = partition.train[partition.train['region'] == region]
        te = partition.test[partition.test['region'] == region]
        fit = model.model_for(region)
        rows.append({
            'region': region,
            'model_used': 'regional' if region in model.regions else 'pooled',
            'n_train': len(tr),
            'n_test': len(te),
            'train_rmse': rmse(tr[target], fit.predict(tr, model.spec)) if len(tr) else np.nan,
            'test_rmse': rmse(te[target], fit.predict(te, model.spec)) if len(te) else np.nan,
            'r2': float(fit.results.rsquared),
            'selected': ';'.join(fit.selected),
        })
    return pd.DataFrame(rows)


def config_params(cfg: Dict) -> Dict:
    lin_cfg = cfg.get('models', {}).get('linear', {}) or {}
    return {
        'alpha': float(lin_cfg.get('alpha', 0.05)),
        'min_region_rows': lin_cfg.get('min_region_rows', None),
    }


def main(config_path: str) -> None:
    cfg = load_config(config_path)
    ensure_directories(cfg['paths']['output_dir'], cfg['paths']['models_dir'])
    print_environment(cfg)

    partition, _ = prepare_datasets(cfg)
    spec = FeatureSpec.from_config(cfg)
    params = config_params(cfg)
    print(f"Backward elimination at alpha={params['alpha']}")

    model = fit_linear(partition, spec, **params)
    for label, regional in [('regional', True), ('pooled', False)]:
        scores = evaluate_linear(model, partition, regional=regional)
        print(f"Linear ({label}) Train RMSE: {scores['train_rmse']:.4f} | Test RMSE: {scores['test_rmse']:.4f}")

    table = regional_rmse_table(model, partition)
    print(table.round(4).to_string(index=False))
    path = write_table(table, cfg['paths']['output_dir'], 'linear_regional_rmse')
    print(f"Wrote regional RMSE table: {path}")

    if cfg.get('output', {}).get('save_model', True):
        model_path = save_model(model, cfg['paths']['models_dir'], 'linear')
        print(f"Saved model to: {model_path}")
    else:
        print("Model saving skipped (configured to not save)")


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Fit regional OLS models for wildfire size')
    parser.add_argument('--config', type=str, required=True, help='Path to config.yaml')
    args = parser.parse_args()
    main(args.config)
