import argparse
import numpy as np
import pandas as pd
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from sklearn.ensemble import RandomForestRegressor

from fire_utils import (
    FeatureSpec, check_no_missing, encode_features, rmse,
    load_config, ensure_directories, print_environment, save_model, write_table,
)
from preprocessing import Partition, prepare_datasets


@dataclass(frozen=True)
class RFModel:
    estimator: RandomForestRegressor
    columns: Tuple[str, ...]
    spec: FeatureSpec
    oob_rmse: float
    importance: pd.DataFrame


def oob_permutation_importance(forest: RandomForestRegressor, X: np.ndarray, y: np.ndarray, seed: int = 42) -> np.ndarray:
    """Mean increase in out-of-bag MSE when one feature is permuted, averaged over trees."""
    rng = np.random.default_rng(seed)
    n_rows, n_features = X.shape
    increase = np.zeros(n_features)
    n_used = 0
    for tree, sampled in zip(forest.estimators_, forest.estimators_samples_):
        oob = np.ones(n_rows, dtype=bool)
        oob[sampled] = False
        if oob.sum() < 2:
            continue
        X_oob, y_oob = X[oob], y[oob]
        base = np.mean((y_oob - tree.predict(X_oob)) ** 2)
        for j in range(n_features):
            X_perm = X_oob.copy()
            X_perm[:, j] = rng.permutation(X_perm[:, j])
            increase[j] += np.mean((y_oob - tree.predict(X_perm)) ** 2) - base
        n_used += 1
    return increase / max(n_used, 1)


def fit_rf(partition: Partition, spec: FeatureSpec, n_estimators: int = 500, max_features: Optional[int] = None, min_samples_leaf: int = 5, n_jobs: int = -1, seed: int = 42) -> RFModel:
    train = partition.train
    check_no_missing(train, spec.columns + [spec.target], 'random forest')
    X = encode_features(train, spec)
    y = train[spec.target].to_numpy(dtype=float)
    # Regression forests try a third of the predictors at each split unless told otherwise
    mtry = max_features if max_features is not None else max(1, X.shape[1] // 3)

    print(f"Training RF with n_estimators={n_estimators}, max_features={mtry}")
    forest = RandomForestRegressor(
        n_estimators=n_estimators,
        max_features=mtry,
        min_samples_leaf=min_samples_leaf,
        bootstrap=True,
        oob_score=True,
        n_jobs=n_jobs,
        random_state=seed,
    )
    X_np = X.to_numpy()
    forest.fit(X_np, y)

    oob_pred = forest.oob_prediction_
    covered = np.isfinite(oob_pred)
    oob_rmse = rmse(y[covered], oob_pred[covered])

    importance = pd.DataFrame({
        'feature': list(X.columns),
        'oob_mse_increase': oob_permutation_importance(forest, X_np, y, seed),
        'impurity_importance': forest.feature_importances_,
    }).sort_values('oob_mse_increase', ascending=False).reset_index(drop=True)
    return RFModel(forest, tuple(X.columns), spec, oob_rmse, importance)


def evaluate_rf(model: RFModel, partition: Partition) -> Dict[str, float]:
    spec = model.spec
    check_no_missing(partition.test, spec.columns + [spec.target], 'random forest')
    scores = {}
    for name, df in [('train', partition.train), ('test', partition.test)]:
        X = encode_features(df, spec, columns=list(model.columns)).to_numpy()
        scores[f'{name}_rmse'] = rmse(df[spec.target], model.estimator.predict(X))
    return scores


def config_params(cfg: Dict) -> Dict:
    rf_cfg = cfg.get('models', {}).get('rf', {}) or {}
    return {
        'n_estimators': int(rf_cfg.get('n_estimators', 500)),
        'max_features': rf_cfg.get('max_features', None),
        'min_samples_leaf': int(rf_cfg.get('min_samples_leaf', 5)),
        'n_jobs': int(rf_cfg.get('n_jobs', -1)),
        'seed': int(cfg.get('random_state', 42)),
    }


def main(config_path: str) -> None:
    cfg = load_config(config_path)
    ensure_directories(cfg['paths']['output_dir'], cfg['paths']['models_dir'])
    print_environment(cfg)

    partition, _ = prepare_datasets(cfg)
    spec = FeatureSpec.from_config(cfg)
    model = fit_rf(partition, spec, **config_params(cfg))
    scores = evaluate_rf(model, partition)
    print(f"RF Train RMSE: {scores['train_rmse']:.4f} | OOB RMSE: {model.oob_rmse:.4f} | Test RMSE: {scores['test_rmse']:.4f}")

    print("\nTop 10 Important Features:")
    print(model.importance.head(10).round(4).to_string(index=False))
    print(f"Wrote importance table: {write_table(model.importance, cfg['paths']['output_dir'], 'rf_importance')}")

    if cfg.get('output', {}).get('save_model', True):
        model_path = save_model(model, cfg['paths']['models_dir'], 'rf')
        print(f"Saved model to: {model_path}")
    else:
        print("Model saving skipped (configured to not save)")


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Fit a random forest regressor for wildfire size')
    parser.add_argument('--config', type=str, required=True, help='Path to config.yaml')
    args = parser.parse_args()
    main(args.config)
