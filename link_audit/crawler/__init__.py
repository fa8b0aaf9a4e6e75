"""link_audit.crawler: обход сайта, извлечение и проверка ссылок."""
