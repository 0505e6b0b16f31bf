# Services layer for business logic
