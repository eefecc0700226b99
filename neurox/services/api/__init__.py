from neurox.services.api.auth import AuthApi
from neurox.services.api.backend import BackendApi
from neurox.services.api.client import ApiClient, extract_error_message
