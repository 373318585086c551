from fastapi import Request


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_settings(request: Request):
    return request.app.state.settings


def get_llm(request: Request):
    return request.app.state.llm


def get_store(request: Request):
    return request.app.state.store
