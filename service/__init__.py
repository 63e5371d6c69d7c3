"""Engine lifecycle management."""
from service.manager import EngineManager
