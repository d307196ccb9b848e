"""SongForge: personalized AI song generation backend."""

__version__ = "1.0.0"
