import yaml
from click.testing import CliRunner

from atlasscope.cli import describe_error, main
from atlasscope.errors import EmptyIntersectionError, OrderMismatchError

from conftest import make_batch


def _write_config(tmp_path):
    p = tmp_path / "params.yaml"
    cfg = {
        "qc": {"enable": False},
        "features": {"n_top": None, "blacklist_patterns": ["^MT-"]},
        "correct": {"k": 10, "n_pcs": 10},
        "downstream": {"enable": False},
        "io": {"write_figures": False},
        "runtime": {"n_jobs": 1},
    }
    with open(p, "w") as f:
        yaml.safe_dump(cfg, f)
    return str(p)


def test_cli_runs_end_to_end(tmp_path):
    a, b = tmp_path / "a.h5ad", tmp_path / "b.h5ad"
    make_batch("a", 40, seed=1).write_h5ad(a)
    make_batch("b", 60, seed=2).write_h5ad(b)
    out_dir = tmp_path / "out"
    result = CliRunner().invoke(main, [
        "--reference", f"a={a}",
        "--reference", f"b={b}",
        "--out-dir", str(out_dir),
        "--config", _write_config(tmp_path),
    ])
    assert result.exit_code == 0, result.output
    assert "Done." in result.output
    assert (out_dir / "corrected.h5ad").exists()
    with open(out_dir / "merge_order.txt") as f:
        assert f.read().split() == ["b", "a"]


def test_cli_reports_disjoint_features(tmp_path):
    a, b = tmp_path / "a.h5ad", tmp_path / "b.h5ad"
    make_batch("a", 20, seed=1, features=[f"x{i}" for i in range(40)]).write_h5ad(a)
    make_batch("b", 20, seed=2, features=[f"y{i}" for i in range(40)]).write_h5ad(b)
    result = CliRunner().invoke(main, [
        "--reference", f"a={a}",
        "--reference", f"b={b}",
        "--out-dir", str(tmp_path / "out"),
        "--config", _write_config(tmp_path),
    ])
    assert result.exit_code == 2
    assert "EmptyIntersectionError" in result.output


def test_cli_rejects_malformed_reference(tmp_path):
    result = CliRunner().invoke(main, ["--reference", "nopath", "--out-dir", str(tmp_path / "out")])
    assert result.exit_code == 2
    assert "NAME=PATH" in result.output


def test_describe_error_names_offenders():
    msg = describe_error(OrderMismatchError(missing=["b"], duplicated=["a"]))
    assert msg.startswith("OrderMismatchError")
    assert "['b']" in msg and "['a']" in msg
    assert "a, b" in describe_error(EmptyIntersectionError(["a", "b"]))
