import shortuuid


def generate_tenant_id() -> str:
    return shortuuid.uuid()


def generate_slug_suffix(length: int = 6) -> str:
    return shortuuid.ShortUUID(alphabet="abcdefghijkmnopqrstuvwxyz23456789").random(length=length)
