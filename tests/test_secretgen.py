import json
import os
import stat
from unittest.mock import patch

import pytest

from atdeploy.config import DeploymentConfig, SupervisorKind
from atdeploy.errors import PreconditionError
from atdeploy.secretgen import (
    KEY_BITS, PASSWORD_BITS, generate_bundle, generate_secret, load_config, persist_config,
)


def test_secret_length_matches_bits():
    assert len(generate_secret(KEY_BITS)) == 64
    assert len(generate_secret(PASSWORD_BITS)) == 32
    assert all(c in "0123456789abcdef" for c in generate_secret(KEY_BITS))


@pytest.mark.parametrize("bits", [0, -8, 7, 100])
def test_invalid_bit_sizes_rejected(bits):
    with pytest.raises(ValueError):
        generate_secret(bits)


def test_bundle_secrets_are_pairwise_distinct():
    values = list(generate_bundle().reveal().values())
    assert len(values) == 7
    assert len(set(values)) == len(values)


def test_bundles_differ_between_runs():
    first, second = generate_bundle().reveal(), generate_bundle().reveal()
    for name in first:
        assert first[name] != second[name]


def test_missing_randomness_source_is_a_precondition_failure():
    with patch("atdeploy.secretgen.secrets.token_bytes", side_effect=NotImplementedError):
        with pytest.raises(PreconditionError):
            generate_secret(KEY_BITS)


def test_secrets_hidden_from_repr(config):
    text = repr(config)
    for value in config.secrets.reveal().values():
        assert value not in text
    assert "s3cret-db" not in text


def test_deployment_file_is_owner_only(config, tmp_path):
    path = tmp_path / "state" / "deployment.json"
    persist_config(config, path)

    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    data = json.loads(path.read_text())
    assert data["domain"] == "example.test"
    assert data["secrets"]["jwt_secret"] == config.secrets.jwt_secret.get_secret_value()

    loaded = load_config(path)
    assert isinstance(loaded, DeploymentConfig)
    assert loaded.supervisor is SupervisorKind.PM2
    assert loaded.db_password.get_secret_value() == "s3cret-db"


def test_load_config_without_deployment(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.json")


def test_no_repeats_across_many_trials():
    values = [generate_secret(PASSWORD_BITS) for _ in range(2000)]
    assert len(set(values)) == len(values)
