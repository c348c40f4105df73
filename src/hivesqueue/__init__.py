"""hivesqueue - Slurm job status over SSH."""

__version__ = "0.1.0"
