"""Internal constants shared across the library."""

USER_AGENT = "storesync/1"
DOCUMENTS_PATH = "/v1/documents"
