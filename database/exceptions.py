"""Database layer exceptions."""

class DatabaseError(Exception):
    """Base class for store failures."""
    pass

class DatabaseSchemaError(DatabaseError):
    """Raised when schema files are missing, invalid or cannot be applied."""
    pass

class StoreUnavailableError(DatabaseError):
    """Raised when the backing store cannot be reached or a transaction cannot commit."""
    pass

class DocumentExistsError(DatabaseError):
    """Raised by ``Transaction.create`` when the document is already present."""

    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"Document {collection}/{doc_id} already exists")

class DocumentNotFoundError(DatabaseError):
    """Raised by ``Transaction.update`` when the document does not exist."""

    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"Document {collection}/{doc_id} not found")
