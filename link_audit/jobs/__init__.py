"""link_audit.jobs: задания сканирования, их хранилища и контроллер."""
