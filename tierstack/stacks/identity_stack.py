from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from tierstack.config.environments import IdentityConfig, PasswordPolicy, TopologyConfig
from tierstack.errors import ConfigurationError
from tierstack.handles import CredentialHandle, IdentityHandle
from tierstack.stacks.base import Blueprint, TopologyStack

MFA_LEVELS = ("optional", "required")
PASSWORD_POLICY_FLOOR = PasswordPolicy(
    min_length=8,
    require_lowercase=True,
    require_uppercase=True,
    require_digits=True,
    require_symbols=False,
)

OAUTH_SCOPES = ("email", "openid", "profile", "phone")
CUSTOM_ATTRIBUTES = (
    ("company_name", "string"),
    ("subscription_plan", "string"),
    ("onboarding_completed", "boolean"),
)

# Output keys
USER_POOL_ID = "UserPoolId"
CLIENT_ID = "UserPoolClientId"
DOMAIN = "UserPoolDomain"
CLIENT_SECRET_ARN = "UserPoolClientSecretArn"


@dataclass(frozen=True)
class IdentityBlueprint(Blueprint):
    user_pool_name: str
    client_name: str
    domain_prefix: str
    mfa: str
    password_policy: PasswordPolicy
    sign_in_aliases: Tuple[str, ...]
    required_attributes: Tuple[str, ...]
    custom_attributes: Tuple[Tuple[str, str], ...]
    oauth_scopes: Tuple[str, ...]
    callback_urls: Tuple[str, ...]
    logout_urls: Tuple[str, ...]
    access_token_hours: int
    id_token_hours: int
    refresh_token_days: int
    generate_client_secret: bool
    client_secret_name: Optional[str]


def enforce_security_floor(identity: IdentityConfig, stack: str) -> None:
    """Reject any identity settings weaker than the account-security floor."""
    if identity.mfa not in MFA_LEVELS:
        raise ConfigurationError(
            f"MFA must be one of {', '.join(MFA_LEVELS)}, got '{identity.mfa}'",
            stack=stack,
            field="identity.mfa",
        )
    policy = identity.password_policy
    floor = PASSWORD_POLICY_FLOOR
    if policy.min_length < floor.min_length:
        raise ConfigurationError(
            f"minimum password length {policy.min_length} is below {floor.min_length}",
            stack=stack,
            field="identity.password_policy.min_length",
        )
    for rule in ("require_lowercase", "require_uppercase", "require_digits", "require_symbols"):
        if getattr(floor, rule) and not getattr(policy, rule):
            raise ConfigurationError(
                f"{rule} cannot be disabled", stack=stack, field=f"identity.password_policy.{rule}"
            )


class IdentityStack(TopologyStack):
    """User directory, client registration and hosted login domain."""

    kind = "identity"
    component = "Identity"

    def __init__(self, config: TopologyConfig):
        super().__init__(config)
        self.identity_config = config.profile.identity
        enforce_security_floor(self.identity_config, self.stack_name)

    def blueprint(self, provider) -> IdentityBlueprint:
        identity = self.identity_config
        return IdentityBlueprint(
            name=self.props.resource_name("users"),
            tags=self.tags(),
            user_pool_name=self.props.resource_name("users"),
            client_name=self.props.resource_name("client"),
            domain_prefix=self.props.resource_name("auth"),
            mfa=identity.mfa,
            password_policy=identity.password_policy,
            sign_in_aliases=("email", "phone"),
            required_attributes=("email", "phone_number", "fullname"),
            custom_attributes=CUSTOM_ATTRIBUTES,
            oauth_scopes=OAUTH_SCOPES,
            callback_urls=identity.callback_urls,
            logout_urls=identity.logout_urls,
            access_token_hours=1,
            id_token_hours=1,
            refresh_token_days=30,
            generate_client_secret=identity.generate_client_secret,
            client_secret_name=(
                self.props.resource_name("client-secret")
                if identity.generate_client_secret
                else None
            ),
        )

    def to_handle(self, blueprint: IdentityBlueprint, outputs: Mapping[str, str]) -> IdentityHandle:
        client_secret = None
        if blueprint.generate_client_secret:
            client_secret = CredentialHandle(secret_ref=self.output(outputs, CLIENT_SECRET_ARN))
        return IdentityHandle(
            stack_name=self.stack_name,
            status=self.status_of(outputs),
            user_pool_id=self.output(outputs, USER_POOL_ID),
            client_id=self.output(outputs, CLIENT_ID),
            domain=self.output(outputs, DOMAIN),
            client_secret=client_secret,
        )
