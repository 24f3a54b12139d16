"""HTTP subscription API.

See Also:
    [Api][pushbrotr.services.api.service.Api]: The service class.
    [ApiConfig][pushbrotr.services.api.configs.ApiConfig]: Service configuration.
"""

from .configs import ApiConfig
from .service import Api


__all__ = ["Api", "ApiConfig"]
