"""Launch and monitor Annotat3D instances on a Slurm cluster over SSH."""

__version__ = "0.1.0"
