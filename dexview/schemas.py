"""
Pydantic models for PokeAPI responses.
Only the fields the client uses are declared; extra fields are ignored.
"""
from pydantic import BaseModel, Field
from typing import List, Optional


class NamedResource(BaseModel):
    """A name plus the URL of its detail endpoint (e.g. "bulbasaur")"""
    name: str
    url: str


# ===== LISTING =====

class PaginatedResponse(BaseModel):
    """Standard paginated list (e.g. /pokemon, /type)"""
    count: int
    next: Optional[str] = None
    previous: Optional[str] = None
    results: List[NamedResource] = []

    @property
    def has_next_page(self) -> bool:
        return bool(self.next)


# ===== POKEMON DETAIL =====

class ArtworkSprites(BaseModel):
    front_default: Optional[str] = None


class OtherSprites(BaseModel):
    official_artwork: ArtworkSprites = Field(
        default_factory=ArtworkSprites, alias="official-artwork"
    )

    class Config:
        populate_by_name = True


class PokemonSprites(BaseModel):
    front_default: Optional[str] = None
    other: OtherSprites = Field(default_factory=OtherSprites)


class PokemonType(BaseModel):
    slot: int
    type: NamedResource


class PokemonAbility(BaseModel):
    ability: NamedResource
    is_hidden: bool = False


class PokemonStat(BaseModel):
    base_stat: int
    stat: NamedResource


class PokemonDetail(BaseModel):
    """Detail record from /pokemon/{nameOrId}"""
    id: int
    name: str
    sprites: PokemonSprites = Field(default_factory=PokemonSprites)
    types: List[PokemonType] = []
    abilities: List[PokemonAbility] = []
    stats: List[PokemonStat] = []

    @property
    def artwork_url(self) -> Optional[str]:
        """Official artwork, falling back to the default sprite."""
        return self.sprites.other.official_artwork.front_default or self.sprites.front_default


# ===== TYPE DETAIL =====

class TypeMember(BaseModel):
    pokemon: NamedResource
    slot: int


class TypeDetails(BaseModel):
    """Type record from /type/{name} with its member list"""
    id: int
    name: str
    pokemon: List[TypeMember] = []

    @property
    def members(self) -> List[NamedResource]:
        return [member.pokemon for member in self.pokemon]
