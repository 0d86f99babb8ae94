"""World-switching sidecar for a Minecraft server, driven over RCON."""

__version__ = "0.1.0"
