"""Core of the internet uplink monitor: controller client, reconciler, hysteresis, push loop."""
