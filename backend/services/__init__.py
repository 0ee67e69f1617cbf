# Services Package - domain logic shared by the API routers and background jobs
