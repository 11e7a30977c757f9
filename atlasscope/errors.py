from typing import Iterable, Optional, Sequence


class IntegrationError(Exception):
    """Base class for data/configuration problems that stop an integration run."""


class EmptyIntersectionError(IntegrationError):
    def __init__(self, batches: Iterable[str]):
        self.batches = list(batches)
        super().__init__(f"No features shared by all batches: {self.batches}")


class EmptyFeatureSetError(IntegrationError):
    def __init__(self, n_candidates: Optional[int] = None):
        self.n_candidates = n_candidates
        msg = "Feature selection is empty; cannot search for mutual nearest neighbours"
        if n_candidates is not None:
            msg += f" ({n_candidates} candidate features after blacklist)"
        super().__init__(msg)


class InsufficientNeighboursError(IntegrationError):
    def __init__(self, batch: str, step: int, n_reference_cells: Optional[int] = None):
        self.batch = batch
        self.step = step
        self.n_reference_cells = n_reference_cells
        msg = f"Step {step}: no mutual nearest neighbours between batch '{batch}' and the running reference"
        if n_reference_cells is not None:
            msg += f" ({n_reference_cells} reference cells)"
        super().__init__(msg)


class OrderMismatchError(IntegrationError):
    def __init__(self, missing: Sequence[str] = (), unexpected: Sequence[str] = (), duplicated: Sequence[str] = ()):
        self.missing = list(missing)
        self.unexpected = list(unexpected)
        self.duplicated = list(duplicated)
        parts = []
        if self.missing:
            parts.append(f"missing={self.missing}")
        if self.unexpected:
            parts.append(f"unexpected={self.unexpected}")
        if self.duplicated:
            parts.append(f"duplicated={self.duplicated}")
        super().__init__("Merge order is not a permutation of the batch set: " + ", ".join(parts))
