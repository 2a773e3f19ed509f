"""Composable tunnels for a layered proxy: inbounds, routing, a direct outbound and user accounting."""

__version__ = "0.1.0"