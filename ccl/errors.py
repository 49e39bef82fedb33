class ConfigurationError(ValueError):
    """Buffers or options handed to the labeling routine are unusable"""

class DeviceExecutionError(RuntimeError):
    """The compute backend failed to allocate, launch or execute"""
