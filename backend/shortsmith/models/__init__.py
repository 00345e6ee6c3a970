# Models module
from shortsmith.models.processing_record import ProcessingRecord

__all__ = ["ProcessingRecord"]
