"""KickExpert competition backend."""
