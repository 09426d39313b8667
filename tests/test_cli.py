import json

from click.testing import CliRunner

from ucp_core.cli import cli
from ucp_core.signing import load_private_key


def test_keygen_writes_key_and_prints_jwk(tmp_path):
    path = tmp_path / "business_key.pem"
    runner = CliRunner()

    result = runner.invoke(cli, ["keygen", str(path), "--kid", "key_2026"])

    assert result.exit_code == 0, result.output
    load_private_key(str(path))
    jwk = json.loads(result.output[result.output.index("{"):])
    assert jwk["kid"] == "key_2026"
    assert jwk["crv"] == "P-256"


def test_keygen_refuses_to_overwrite(tmp_path):
    path = tmp_path / "business_key.pem"
    path.write_text("existing")

    result = CliRunner().invoke(cli, ["keygen", str(path)])

    assert result.exit_code == 1
    assert "already exists" in result.output
    assert path.read_text() == "existing"


def test_sweep_on_empty_ledger(tmp_path):
    store_url = f"sqlite:///{tmp_path / 'ledger.db'}"

    result = CliRunner().invoke(cli, ["sweep", "--store-url", store_url])

    assert result.exit_code == 0, result.output
    assert "Expired reservations: 0" in result.output
    assert "No stuck completions" in result.output


def test_dead_letters(tmp_path):
    store_url = f"sqlite:///{tmp_path / 'ledger.db'}"
    runner = CliRunner()

    listed = runner.invoke(cli, ["dead-letters", "--store-url", store_url])
    assert listed.exit_code == 0, listed.output
    assert "Dead-letter store is empty" in listed.output

    missing = runner.invoke(cli, ["dead-letters", "--store-url", store_url, "--redeliver", "nope"])
    assert missing.exit_code == 1
    assert "Dead letter not found" in missing.output
