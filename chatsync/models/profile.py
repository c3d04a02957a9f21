from typing import Optional, TypedDict


class ProfileDocument(TypedDict, total=False):
    _id: str
    name: str
    display_name: Optional[str]
    avatar_url: Optional[str]
    sector_id: Optional[str]
    is_active: bool
