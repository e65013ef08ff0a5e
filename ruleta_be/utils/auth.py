from ruleta_be.models import db, User

def user_identity_lookup(user):
    return str(user.id)

def user_lookup_callback(_jwt_header, jwt_data):
    identity = jwt_data["sub"]
    user_obj = db.session.get(User, int(identity))
    if user_obj is None or not user_obj.is_active:
        return None
    return user_obj

def register_jwt_handlers(jwt):
    jwt.user_identity_loader(user_identity_lookup)
    jwt.user_lookup_loader(user_lookup_callback)
