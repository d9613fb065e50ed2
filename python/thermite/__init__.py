"""Remove old Amazon Elastic Container Registry images that are not deployed in a Kubernetes cluster."""

__version__ = "0.1.0"
