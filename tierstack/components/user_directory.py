from aws_cdk import (
    aws_cognito as cognito,
    aws_secretsmanager as secretsmanager,
    Duration,
    RemovalPolicy,
    Stack,
)
from constructs import Construct

from tierstack.components.base import publish_outputs
from tierstack.stacks.identity_stack import (
    CLIENT_ID,
    CLIENT_SECRET_ARN,
    DOMAIN,
    USER_POOL_ID,
    IdentityBlueprint,
)

_OAUTH_SCOPES = {
    "email": cognito.OAuthScope.EMAIL,
    "openid": cognito.OAuthScope.OPENID,
    "profile": cognito.OAuthScope.PROFILE,
    "phone": cognito.OAuthScope.PHONE,
}


def _custom_attribute(kind: str) -> cognito.ICustomAttribute:
    if kind == "boolean":
        return cognito.BooleanAttribute(mutable=True)
    if kind == "number":
        return cognito.NumberAttribute(mutable=True)
    return cognito.StringAttribute(min_len=1, max_len=256, mutable=True)


class UserDirectory(Construct):
    """
    Cognito user pool, app client and hosted login domain
    """

    def __init__(self, scope: Construct, construct_id: str,
                 blueprint: IdentityBlueprint,
                 **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        policy = blueprint.password_policy
        standard = {
            name: cognito.StandardAttribute(required=True, mutable=True)
            for name in blueprint.required_attributes
        }

        self.user_pool = cognito.UserPool(self, "UserPool",
            user_pool_name=blueprint.user_pool_name,
            self_sign_up_enabled=True,
            sign_in_aliases=cognito.SignInAliases(
                email="email" in blueprint.sign_in_aliases,
                phone="phone" in blueprint.sign_in_aliases
            ),
            auto_verify=cognito.AutoVerifiedAttrs(email=True, phone=True),
            standard_attributes=cognito.StandardAttributes(**standard),
            custom_attributes={
                name: _custom_attribute(kind) for name, kind in blueprint.custom_attributes
            },
            password_policy=cognito.PasswordPolicy(
                min_length=policy.min_length,
                require_lowercase=policy.require_lowercase,
                require_uppercase=policy.require_uppercase,
                require_digits=policy.require_digits,
                require_symbols=policy.require_symbols
            ),
            mfa=cognito.Mfa.REQUIRED if blueprint.mfa == "required" else cognito.Mfa.OPTIONAL,
            mfa_second_factor=cognito.MfaSecondFactor(sms=True, otp=True),
            account_recovery=cognito.AccountRecovery.EMAIL_ONLY,
            removal_policy=RemovalPolicy.RETAIN
        )

        self.client = self.user_pool.add_client("UserPoolClient",
            user_pool_client_name=blueprint.client_name,
            generate_secret=blueprint.generate_client_secret,
            auth_flows=cognito.AuthFlow(user_password=True, user_srp=True),
            o_auth=cognito.OAuthSettings(
                flows=cognito.OAuthFlows(authorization_code_grant=True),
                scopes=[_OAUTH_SCOPES[scope] for scope in blueprint.oauth_scopes],
                callback_urls=list(blueprint.callback_urls),
                logout_urls=list(blueprint.logout_urls)
            ),
            access_token_validity=Duration.hours(blueprint.access_token_hours),
            id_token_validity=Duration.hours(blueprint.id_token_hours),
            refresh_token_validity=Duration.days(blueprint.refresh_token_days),
            prevent_user_existence_errors=True
        )

        self.domain = self.user_pool.add_domain("UserPoolDomain",
            cognito_domain=cognito.CognitoDomainOptions(domain_prefix=blueprint.domain_prefix)
        )

        outputs = {
            USER_POOL_ID: self.user_pool.user_pool_id,
            CLIENT_ID: self.client.user_pool_client_id,
            # Hosted login host, not just the prefix
            DOMAIN: f"{self.domain.domain_name}.auth.{Stack.of(self).region}.amazoncognito.com",
        }

        # Client secret is stored, never published as an output
        if blueprint.generate_client_secret:
            self.client_secret = secretsmanager.Secret(self, "ClientSecret",
                secret_name=blueprint.client_secret_name,
                description=f"App client secret for {blueprint.user_pool_name}",
                secret_string_value=self.client.user_pool_client_secret
            )
            outputs[CLIENT_SECRET_ARN] = self.client_secret.secret_arn

        publish_outputs(self, outputs)
