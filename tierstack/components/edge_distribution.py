from aws_cdk import (
    aws_cloudfront as cloudfront,
    aws_cloudfront_origins as origins,
    aws_s3 as s3,
    RemovalPolicy,
    Duration,
)
from constructs import Construct

from tierstack.components.base import publish_outputs
from tierstack.config.environments import CACHE, PathBehavior
from tierstack.stacks.cdn_stack import DISTRIBUTION_DOMAIN, DISTRIBUTION_ID, CdnBlueprint

_PRICE_CLASSES = {
    "PriceClass_100": cloudfront.PriceClass.PRICE_CLASS_100,
    "PriceClass_200": cloudfront.PriceClass.PRICE_CLASS_200,
    "PriceClass_All": cloudfront.PriceClass.PRICE_CLASS_ALL,
}
_VIEWER_PROTOCOLS = {
    "redirect-to-https": cloudfront.ViewerProtocolPolicy.REDIRECT_TO_HTTPS,
    "https-only": cloudfront.ViewerProtocolPolicy.HTTPS_ONLY,
    "allow-all": cloudfront.ViewerProtocolPolicy.ALLOW_ALL,
}


class EdgeDistribution(Construct):
    """
    CloudFront distribution in front of the load balancer. Each path
    behavior either forwards every request to the origin or caches it.
    """

    def __init__(self, scope: Construct, construct_id: str,
                 blueprint: CdnBlueprint,
                 **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        self.blueprint = blueprint
        self.origin = origins.HttpOrigin(blueprint.origin_domain,
            protocol_policy=cloudfront.OriginProtocolPolicy.HTTP_ONLY,
            http_port=blueprint.origin_http_port,
            read_timeout=Duration.seconds(30)
        )

        # Access logs
        self.log_bucket = s3.Bucket(self, "AccessLogBucket",
            encryption=s3.BucketEncryption.S3_MANAGED,
            block_public_access=s3.BlockPublicAccess.BLOCK_ALL,
            object_ownership=s3.ObjectOwnership.OBJECT_WRITER,
            enforce_ssl=True,
            lifecycle_rules=[s3.LifecycleRule(expiration=Duration.days(90))],
            removal_policy=RemovalPolicy.RETAIN
        )

        self.distribution = cloudfront.Distribution(self, "Distribution",
            comment=blueprint.comment,
            default_behavior=self._behavior_options(blueprint.default_behavior),
            additional_behaviors={
                behavior.pattern: self._behavior_options(behavior)
                for behavior in blueprint.additional_behaviors
            },
            price_class=_PRICE_CLASSES[blueprint.price_class],
            enable_logging=True,
            log_bucket=self.log_bucket,
            log_file_prefix=f"{blueprint.log_prefix}/"
        )

        publish_outputs(self, {
            DISTRIBUTION_ID: self.distribution.distribution_id,
            DISTRIBUTION_DOMAIN: self.distribution.distribution_domain_name,
        })

    def _behavior_options(self, behavior: PathBehavior) -> cloudfront.BehaviorOptions:
        viewer_protocol = _VIEWER_PROTOCOLS[self.blueprint.viewer_protocol]
        if behavior.mode == CACHE:
            return cloudfront.BehaviorOptions(
                origin=self.origin,
                viewer_protocol_policy=viewer_protocol,
                cache_policy=cloudfront.CachePolicy.CACHING_OPTIMIZED,
                # The catch-all accepts every method; only GET and HEAD are cached
                allowed_methods=(
                    cloudfront.AllowedMethods.ALLOW_ALL if behavior.is_catch_all
                    else cloudfront.AllowedMethods.ALLOW_GET_HEAD_OPTIONS
                ),
                cached_methods=cloudfront.CachedMethods.CACHE_GET_HEAD,
                compress=True
            )
        return cloudfront.BehaviorOptions(
            origin=self.origin,
            viewer_protocol_policy=viewer_protocol,
            cache_policy=cloudfront.CachePolicy.CACHING_DISABLED,
            origin_request_policy=cloudfront.OriginRequestPolicy.ALL_VIEWER,
            allowed_methods=cloudfront.AllowedMethods.ALLOW_ALL
        )
