"""TravelPact data core - known locations, waypoints, connections and pacts over a hosted backend."""

from .app import TravelPactApp
from .main import main

__all__ = ['TravelPactApp', 'main']
