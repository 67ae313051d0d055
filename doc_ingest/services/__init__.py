"""
Services Package — orchestration around the processing stages

  status.py    StatusTracker + StatusStore port
  lease.py     per-document lease (Redis / no-op)
  pipeline.py  IngestionPipeline.handle_job() and build_pipeline()
"""
