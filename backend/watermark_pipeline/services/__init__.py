"""
Watermark Pipeline Backend — Services Layer
=============================================

What:  Business logic between routes (HTTP) and repositories (persistence).
How:   WatermarkPipeline composes the other services; routes reach it via
       request.app.state.pipeline.

Service Inventory:
    - RequestSigner: HMAC-SHA256 request signing and canonical queries
    - WatermarkRemote (abstract): interface to the remote watermark service
    - WatermarkServiceClient: httpx implementation with retries + circuit breaker
    - FileService: document validation, storage, public URLs, downloads
    - TaskStore / WatermarkContentStore / PolicyStore: SQL and in-memory repositories
    - TaskLifecycleTracker: the only writer of task record state transitions
    - TaskWorkerPool: background polling of accepted remote tasks
    - ProvenanceResolver: identifies the watermark a file carries
    - PolicyAdapter: policy, depth and compatibility for a file type + sensitivity
    - WatermarkPipeline: embed / extract / status / cancel / retry orchestration
"""
