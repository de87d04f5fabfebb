"""Domain packages for the roulette backend."""
