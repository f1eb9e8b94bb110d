from backend.files_manager.logging.logger import LoggingInterceptor, get_json_logger  # noqa: F401
