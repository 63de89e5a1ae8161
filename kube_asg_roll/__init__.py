"""Rolling replacement of Kubernetes node pools backed by AWS autoscaling groups."""
