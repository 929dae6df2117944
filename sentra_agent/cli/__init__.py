"""CLI module for Sentra Agent."""
