"""Global structure-from-motion stages: scene types, options, view graph calibration,
rotation averaging, track establishment and global positioning."""

__version__ = "0.1.0"