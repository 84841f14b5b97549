"""
Shared test helpers: frozen clock, fake billing provider, record factories.
"""
