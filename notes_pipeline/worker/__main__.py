from notes_pipeline.worker.service.worker_service import main

main()
