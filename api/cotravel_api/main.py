from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .config import CORS_ORIGINS
from .db import init_db
from .errors import CoTravelError, cotravel_error_handler
from .logging_setup import configure_logging
from .routers import admin, auth, businesses, invoices, transactions, users

app = FastAPI(title="CoTravel Escrow API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(CoTravelError, cotravel_error_handler)

@app.on_event("startup")
def on_startup():
    configure_logging()
    init_db()

app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
app.include_router(invoices.router, prefix="/api/invoices", tags=["invoices"])
app.include_router(transactions.router, prefix="/api/transactions", tags=["transactions"])
app.include_router(businesses.router, prefix="/api/businesses", tags=["businesses"])
app.include_router(users.router, prefix="/api/users", tags=["users"])
app.include_router(admin.router, prefix="/api/admin", tags=["admin"])

@app.get("/")
def root():
    return {"ok": True, "service": "cotravel-api"}
