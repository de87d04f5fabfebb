"""Gigglo roulette chat backend."""
