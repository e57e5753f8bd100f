import logging


def log_business_event(
    logger: logging.Logger,
    *,
    event: str,
    request_id: str | None = None,
    level: int = logging.INFO,
    **fields,
) -> None:
    chunks = [f"event={event}", f"request_id={request_id or '-'}"]
    for key, value in fields.items():
        if value is None:
            continue
        chunks.append(f"{key}={value}")
    logger.log(level, "business_event %s", " ".join(chunks))
