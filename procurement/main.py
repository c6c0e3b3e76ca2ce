import logging

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from procurement.config import settings
from procurement.routers import fulfillment

logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
)

app = FastAPI(title='Procurement Fulfillment')

app.include_router(fulfillment.router)


@app.get('/healthz', response_class=PlainTextResponse)
def healthz() -> str:
    return 'ok'
