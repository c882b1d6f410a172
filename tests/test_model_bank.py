import numpy as np
import pytest
import yaml

import model_bank
from fire_utils import FeatureSpec, load_config


def test_comparison_table_has_one_row_per_model(partition, cfg):
    table, artifacts = model_bank.compare_models(partition, FeatureSpec.from_config(cfg), cfg)
    assert list(table.columns) == ['model', 'train_rmse', 'test_rmse']
    assert list(table['model']) == ['linear_regional', 'linear_pooled', 'knn', 'gbr', 'rf']
    assert np.isfinite(table[['train_rmse', 'test_rmse']].to_numpy()).all()
    assert set(artifacts) == {'linear', 'knn', 'gbr', 'rf'}


def test_comparison_is_reproducible(partition, cfg):
    spec = FeatureSpec.from_config(cfg)
    a, _ = model_bank.compare_models(partition, spec, cfg, families=['knn', 'rf'])
    b, _ = model_bank.compare_models(partition, spec, cfg, families=['knn', 'rf'])
    assert a.equals(b)


def test_unknown_family_is_rejected(cfg):
    bad = dict(cfg, models={'enabled': ['linear', 'svm']})
    with pytest.raises(ValueError, match='svm'):
        model_bank.enabled_families(bad)


def test_seed_sensitivity_summarises_each_model(cleaned, cfg):
    summary = model_bank.seed_sensitivity(cleaned, cfg, seeds=[1, 2], families=['linear'])
    assert list(summary['model']) == ['linear_regional', 'linear_pooled']
    assert (summary['n_seeds'] == 2).all()
    assert (summary['test_rmse_std'] >= 0).all()


def test_load_config_applies_environment_overrides(tmp_path, monkeypatch):
    path = tmp_path / 'config.yaml'
    path.write_text(yaml.safe_dump({'paths': {'data_dir': 'data', 'output_dir': 'outputs'}, 'random_state': 7}))
    monkeypatch.setenv('OUTPUT_DIR', str(tmp_path / 'elsewhere'))
    monkeypatch.delenv('DATA_DIR', raising=False)
    cfg = load_config(str(path))
    assert cfg['paths']['output_dir'] == str(tmp_path / 'elsewhere')
    assert cfg['paths']['data_dir'] == 'data'
    assert cfg['paths']['models_dir'] == 'models'
    assert cfg['random_state'] == 7


def test_main_writes_comparison_outputs(raw_df, cfg, tmp_path, monkeypatch):
    data_dir = tmp_path / 'data'
    data_dir.mkdir()
    raw_df.to_csv(data_dir / 'FW_Veg_Rem_Combined.csv', index=False)
    conf = dict(cfg, paths={'data_dir': str(data_dir), 'output_dir': str(tmp_path / 'out'), 'models_dir': str(tmp_path / 'models')})
    path = tmp_path / 'config.yaml'
    path.write_text(yaml.safe_dump(conf))
    for var in ('DATA_DIR', 'OUTPUT_DIR', 'MODELS_DIR'):
        monkeypatch.delenv(var, raising=False)
    model_bank.main(str(path))
    out = tmp_path / 'out'
    for name in ('model_comparison', 'linear_regional_rmse', 'gbr_sweep', 'rf_importance'):
        assert (out / f'{name}.csv').exists()
