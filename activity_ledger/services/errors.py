"""Common error handling for all services"""

class ServiceError(Exception):
    """Base exception for all service errors"""
    pass

class DatabaseError(ServiceError):
    """Base exception for database-related errors"""
    pass

class RecorderError(ServiceError):
    """Raised when a telemetry event cannot be recorded"""
    pass

class AggregationError(ServiceError):
    """Base exception for rollup and summary errors"""
    pass

class AnalyticsError(ServiceError):
    """Base exception for analytics-related errors"""
    pass

class ConfigError(ServiceError):
    """Base exception for configuration errors"""
    pass
