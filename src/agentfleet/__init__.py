"""On-demand build agent VMs with admission control and snapshot reuse."""

__version__ = "0.1.0"
