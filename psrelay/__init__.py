"""psrelay: relay GitHub webhook events into Pokémon Showdown chatrooms."""

__version__ = "0.4.0"
