import sys
import os
import warnings as _warnings

_warnings.filterwarnings("ignore", category=FutureWarning)
_warnings.filterwarnings("ignore", category=DeprecationWarning)
# Silence noisy modules early
_warnings.filterwarnings("ignore", category=FutureWarning, module=r"anndata.*")
_warnings.filterwarnings("ignore", category=UserWarning, module=r"scanpy.*")
os.environ.setdefault("PYTHONWARNINGS", "ignore::FutureWarning")

import click
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, BarColumn, TextColumn, TimeElapsedColumn
from rich.table import Table
import pandas as pd

from .errors import (
    IntegrationError,
    EmptyIntersectionError,
    EmptyFeatureSetError,
    InsufficientNeighboursError,
    OrderMismatchError,
)
from .pipeline import run_pipeline
from . import __version__


console = Console()


def _parse_named_path(value: str) -> tuple:
    if "=" not in value:
        raise click.BadParameter(f"expected NAME=PATH, got '{value}'")
    name, path = value.split("=", 1)
    name, path = name.strip(), path.strip()
    if not name or not path:
        raise click.BadParameter(f"expected NAME=PATH, got '{value}'")
    if not os.path.exists(path):
        raise click.BadParameter(f"path does not exist: {path}")
    return name, path


def describe_error(err: IntegrationError) -> str:
    """One-line, user-facing description naming the error kind and offending ids."""
    kind = type(err).__name__
    if isinstance(err, EmptyIntersectionError):
        return f"{kind}: batches {', '.join(err.batches)} share no features"
    if isinstance(err, EmptyFeatureSetError):
        extra = f" ({err.n_candidates} candidates after blacklist)" if err.n_candidates is not None else ""
        return f"{kind}: no feature passed selection thresholds{extra}"
    if isinstance(err, InsufficientNeighboursError):
        return f"{kind}: batch '{err.batch}' found no mutual nearest neighbours at merge step {err.step}"
    if isinstance(err, OrderMismatchError):
        parts = []
        if err.missing:
            parts.append(f"missing {err.missing}")
        if err.unexpected:
            parts.append(f"unexpected {err.unexpected}")
        if err.duplicated:
            parts.append(f"duplicated {err.duplicated}")
        return f"{kind}: merge order " + "; ".join(parts)
    return f"{kind}: {err}"


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__, prog_name="atlasscope", message="%(prog)s %(version)s")
@click.option("--reference", "references", multiple=True, required=True, metavar="NAME=PATH",
              help="Reference batch (.h5ad, 10x directory or features x cells CSV). Repeatable.")
@click.option("--query", metavar="NAME=PATH", help="Query dataset; always merged last.")
@click.option("--priority", type=click.Path(exists=True), help="Priority table (batch, rank|stage, optional n_cells).")
@click.option("--blacklist", type=click.Path(exists=True), help="Extra feature ids never used for neighbour search.")
@click.option("--out-dir", required=True, type=click.Path(), help="Output directory.")
@click.option("--config", type=click.Path(exists=True), help="YAML config replacing config/params.yaml.")
@click.option("--no-resume", is_flag=True, help="Disable resume from checkpoints.")
@click.option("--resume-policy", type=click.Choice(["auto", "minimal", "force"], case_sensitive=False), default=None,
              help="Resume behavior: auto (continue from last completed), minimal (diff-based), force (start from scratch). Default from io.resume_policy.")
@click.option("--dry-run-diff", is_flag=True, help="Only show which stage would rerun based on config changes; do not execute.")
@click.option("--internal-progress/--no-internal-progress", default=False, show_default=True, help="Show per-batch progress bars.")
@click.option("--log-level", default="INFO", show_default=True, type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
def main(references, query, priority, blacklist, out_dir, config, no_resume, resume_policy, dry_run_diff, internal_progress, log_level):
    """AtlasScope CLI: integrate a query with reference batches by ordered MNN correction."""
    os.makedirs(out_dir, exist_ok=True)
    try:
        refs = dict(_parse_named_path(v) for v in references)
        q = _parse_named_path(query) if query else None
    except click.BadParameter as e:
        console.print(f"[red]Error: {e.message}")
        sys.exit(2)
    if len(refs) != len(references):
        console.print("[red]Error: duplicate reference names")
        sys.exit(2)

    with Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        t = progress.add_task("Starting pipeline", total=None)

        def _cb(desc: str):
            progress.update(t, description=desc)
            # Print sticky lines for merge steps (more obvious in console)
            if desc.startswith("Correct · step"):
                console.print(desc)

        try:
            outputs = run_pipeline(
                reference_paths=refs,
                out_dir=out_dir,
                query=q,
                priority_path=priority,
                blacklist_path=blacklist,
                config_path=config,
                resume=not no_resume,
                resume_policy=resume_policy.lower() if resume_policy else None,
                dry_run_diff=dry_run_diff,
                show_internal_progress=internal_progress,
                log_level=log_level,
                progress_callback=_cb,
            )
            progress.update(t, description="Finished")
        except IntegrationError as e:
            progress.update(t, description="Error")
            console.print(f"[red]{describe_error(e)}")
            sys.exit(2)
        except Exception as e:
            progress.update(t, description="Error")
            console.print(f"[red]Error: {e}")
            sys.exit(1)

    if outputs.get("dry_run"):
        console.print(f"Changed stages: {', '.join(outputs['changed_stages']) or '(none)'}")
        console.print(f"Would start from: {outputs['start_from']}")
        return

    console.print("[green]Done.")
    lost_path = outputs.get("lost_variance")
    if lost_path and os.path.exists(lost_path):
        lost = pd.read_csv(lost_path)
        table = Table(title=f"Merge order ({outputs.get('n_cells')} cells, {outputs.get('n_selected')} selected features)")
        for col in ("step", "batch", "lost_variance", "n_pairs", "n_cells"):
            table.add_column(col)
        seed = outputs.get("order", ["?"])[0]
        table.add_row("0", str(seed), "-", "-", "-")
        for _, row in lost.iterrows():
            table.add_row(str(row["step"]), str(row["batch"]), f"{row['lost_variance']:.4f}", str(row["n_pairs"]), str(row["n_cells"]))
        console.print(table)
    for key in ("corrected", "lost_variance", "selected_features", "combined_variance", "merge_order"):
        p = outputs.get(key)
        if p and os.path.exists(p):
            console.print(f"- {key}: {p}")


if __name__ == "__main__":
    main()
