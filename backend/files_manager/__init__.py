"""files_manager: hierarchical user file storage with asynchronous thumbnail generation."""
