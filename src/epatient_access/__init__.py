"""epatient-access: break-glass access control for patient records."""

__version__ = "0.1.0"
