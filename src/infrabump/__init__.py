"""infrabump: discover, resolve and bump Terraform module and Helm chart versions."""

__version__ = "0.4.0"
