"""
fabric_inventory: Stock management with perceptual image search.

Tracks fabric stock items and their colour shades, keeps an append-only
activity ledger of every change, and finds stock items from a photo
using a perceptual-hash index with a cloud label-detection fallback.

Modules:
    fingerprint    Average-hash fingerprints from encoded images
    matcher        Hamming similarity ranking (FAISS binary index)
    vision         Label-detection comparison (Amazon Rekognition)
    search         Two-tier image search orchestration
    stock          Stock/shade aggregate mutations and queries
    ledger         Append-only stock activity ledger
    analytics      Activity summaries, movement reports and alerts
    storage        Local and S3 blob storage for product images
    index_builder  Batch fingerprint rebuild and export
    models         SQLAlchemy models
    database       Engine, session factory and schema setup
    bootstrap      Startup wiring from environment
    errors         Exception types
"""

__version__ = "1.0.0"
