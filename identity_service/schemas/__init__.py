from identity_service.schemas.users import UserProfile, UserUpdate, UsersSearchTerms, DeliveryAddressUpdate, NewPassword, NewIdentity, UserResponse, RoleResponse  # noqa: F401
