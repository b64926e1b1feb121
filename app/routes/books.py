from typing import List, Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.config.db import get_db
from app.errors import ApiError, BookErrorCodes, book_not_found_error
from app.models.models import Book, Checkout
from app.routes.deps import authorize_methods
from app.schemas.schemas import BookCreate, BookOut, BookUpdate
from app.services.rbac import AuthContext, AuthPolicy

router = APIRouter(prefix="/books", tags=["books"])

# GET is public; every mutating verb has its own permission
book_access = authorize_methods(
    {
        "POST": AuthPolicy.of(permissions=["book:create"]),
        "PUT": AuthPolicy.of(permissions=["book:update"]),
        "DELETE": AuthPolicy.of(permissions=["book:delete"]),
    }
)


def _isbn_taken(db: Session, isbn: Optional[str], exclude_id: Optional[int] = None) -> bool:
    if not isbn:
        return False
    query = db.query(Book).filter(Book.isbn == isbn)
    if exclude_id is not None:
        query = query.filter(Book.id != exclude_id)
    return query.first() is not None


@router.get("", response_model=List[BookOut])
def get_books(
    q: Optional[str] = None,
    genre: Optional[str] = None,
    auth: AuthContext = Depends(book_access),
    db: Session = Depends(get_db),
):
    """
    Retrieves the catalog, optionally filtered.

    Parameters:
        q (str | None): Case-insensitive match on title, author or ISBN.
        genre (str | None): Exact genre filter.
        auth (AuthContext): The caller's authorization context (may be anonymous).
        db (Session): The database session.

    Returns:
        List[BookOut]: The matching books ordered by title.
    """
    query = db.query(Book)
    if q:
        pattern = f"%{q}%"
        query = query.filter(
            or_(Book.title.ilike(pattern), Book.author.ilike(pattern), Book.isbn.ilike(pattern))
        )
    if genre:
        query = query.filter(Book.genre == genre)
    return query.order_by(Book.title).all()


@router.get("/{book_id}", response_model=BookOut)
def get_book(book_id: int, auth: AuthContext = Depends(book_access), db: Session = Depends(get_db)):
    """
    Retrieves a single book.

    Raises:
        ApiError: BOOK_NOT_FOUND if the book does not exist.
    """
    book = db.get(Book, book_id)
    if not book:
        raise book_not_found_error(book_id)
    return book


@router.post("", response_model=BookOut, status_code=status.HTTP_201_CREATED)
def create_book(
    book: BookCreate, auth: AuthContext = Depends(book_access), db: Session = Depends(get_db)
):
    """
    Adds a book to the catalog. Requires ``book:create``.

    Parameters:
        book (BookCreate): The catalog data for the new book.
        auth (AuthContext): The caller's authorization context.
        db (Session): The database session.

    Returns:
        BookOut: The created book, initially AVAILABLE.

    Raises:
        ApiError: BOOK_ISBN_TAKEN if a book with the same ISBN already exists.
    """
    if _isbn_taken(db, book.isbn):
        raise ApiError(
            BookErrorCodes.BOOK_ISBN_TAKEN,
            "A book with this ISBN already exists",
            status.HTTP_400_BAD_REQUEST,
        )

    new_book = Book(**book.model_dump())
    db.add(new_book)
    db.commit()
    db.refresh(new_book)
    return new_book


@router.put("/{book_id}", response_model=BookOut)
def update_book(
    book_id: int,
    changes: BookUpdate,
    auth: AuthContext = Depends(book_access),
    db: Session = Depends(get_db),
):
    """Updates catalog fields of a book. Requires ``book:update``; status is never writable here."""
    book = db.get(Book, book_id)
    if not book:
        raise book_not_found_error(book_id)

    data = changes.model_dump(exclude_unset=True)
    if _isbn_taken(db, data.get("isbn"), exclude_id=book_id):
        raise ApiError(
            BookErrorCodes.BOOK_ISBN_TAKEN,
            "A book with this ISBN already exists",
            status.HTTP_400_BAD_REQUEST,
        )
    for field, value in data.items():
        setattr(book, field, value)
    db.commit()
    db.refresh(book)
    return book


@router.delete("/{book_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_book(book_id: int, auth: AuthContext = Depends(book_access), db: Session = Depends(get_db)):
    """
    Removes a book from the catalog. Requires ``book:delete``.

    Raises:
        ApiError: BOOK_NOT_FOUND, or BOOK_HAS_ACTIVE_CHECKOUT (409) while the
        book is checked out.
    """
    book = db.get(Book, book_id)
    if not book:
        raise book_not_found_error(book_id)

    active = (
        db.query(Checkout)
        .filter(Checkout.book_id == book_id, Checkout.returned_date.is_(None))
        .count()
    )
    if active:
        raise ApiError(
            BookErrorCodes.BOOK_HAS_ACTIVE_CHECKOUT,
            "Cannot delete a book that is currently checked out",
            status.HTTP_409_CONFLICT,
            {"bookId": book_id},
        )

    db.query(Checkout).filter(Checkout.book_id == book_id).delete()
    db.delete(book)
    db.commit()
