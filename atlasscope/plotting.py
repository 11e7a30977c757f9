from typing import Iterable, Optional

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns


def plot_mean_variance(decomposition: pd.DataFrame, title: str = "", selected: Optional[Iterable[str]] = None):
    """Scatter of total variance against mean with the fitted technical trend."""
    fig, ax = plt.subplots(figsize=(5, 4))
    dec = decomposition
    sel = pd.Index(list(map(str, selected or ())))
    is_sel = dec.index.astype(str).isin(sel)
    ax.scatter(dec.loc[~is_sel, "mean"], dec.loc[~is_sel, "total_variance"], s=4, c="0.6", alpha=0.6, label="other", rasterized=True)
    if is_sel.any():
        ax.scatter(dec.loc[is_sel, "mean"], dec.loc[is_sel, "total_variance"], s=6, c="tab:red", alpha=0.8, label="selected", rasterized=True)
    o = np.argsort(dec["mean"].to_numpy())
    ax.plot(dec["mean"].to_numpy()[o], dec["technical_variance"].to_numpy()[o], c="tab:blue", lw=1.5, label="trend")
    ax.set_xlabel("Mean log-expression")
    ax.set_ylabel("Variance of log-expression")
    if title:
        ax.set_title(title)
    ax.legend(frameon=False, fontsize=8)
    fig.tight_layout()
    return fig


def plot_lost_variance(lost_variance: pd.DataFrame):
    """Bar chart of the variance fraction discarded at each merge step."""
    fig, ax = plt.subplots(figsize=(max(4, 0.6 * len(lost_variance) + 2), 3.5))
    if len(lost_variance):
        labels = [f"{s}: {b}" for s, b in zip(lost_variance["step"], lost_variance["batch"])]
        sns.barplot(x=labels, y=lost_variance["lost_variance"].to_numpy(), color="tab:blue", ax=ax)
        ax.tick_params(axis="x", labelrotation=45)
    ax.set_xlabel("Merge step")
    ax.set_ylabel("Lost variance")
    ax.set_ylim(0, max(0.05, float(lost_variance["lost_variance"].max()) * 1.1) if len(lost_variance) else 1.0)
    fig.tight_layout()
    return fig
