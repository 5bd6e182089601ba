from aws_cdk import (
    aws_ec2 as ec2,
    aws_elasticloadbalancingv2 as elbv2,
    aws_elasticloadbalancingv2_targets as targets,
    aws_iam as iam,
    Duration,
    Fn,
    Tags,
)
from constructs import Construct
from typing import List

from tierstack.components.base import import_boundary, import_network, publish_outputs
from tierstack.stacks.app_stack import (
    INSTANCE_IDS,
    LOAD_BALANCER_DNS,
    AppBlueprint,
    TargetGroupBlueprint,
)

RUNTIME_ENV_FILE = "/etc/app/runtime.env"


class AppCompute(Construct):
    """
    Application instances in the private subnets behind an internet-facing
    load balancer. API paths go to the backend target group, everything
    else to the frontend.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        blueprint: AppBlueprint,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        self.blueprint = blueprint
        self.vpc = import_network(
            self,
            "Network",
            network_id=blueprint.network_id,
            availability_zones=blueprint.availability_zones,
            public_subnet_ids=blueprint.public_subnet_ids,
            private_subnet_ids=blueprint.private_subnet_ids,
        )
        compute_sg = import_boundary(self, "ComputeBoundary", blueprint.compute_boundary_id)
        load_balancer_sg = import_boundary(
            self, "LoadBalancerBoundary", blueprint.load_balancer_boundary_id
        )

        # IAM Role for EC2 instances, secrets readable by reference only
        self.instance_role = iam.Role(
            self,
            "InstanceRole",
            assumed_by=iam.ServicePrincipal("ec2.amazonaws.com"),
            managed_policies=[
                iam.ManagedPolicy.from_aws_managed_policy_name("AmazonSSMManagedInstanceCore"),
                iam.ManagedPolicy.from_aws_managed_policy_name("CloudWatchAgentServerPolicy"),
            ],
            inline_policies={
                "AppSecretsPolicy": iam.PolicyDocument(
                    statements=[
                        iam.PolicyStatement(
                            actions=[
                                "secretsmanager:GetSecretValue",
                                "secretsmanager:DescribeSecret",
                            ],
                            resources=list(blueprint.readable_secret_refs),
                        )
                    ]
                )
            },
        )

        user_data = self._user_data()

        # Application instances, spread over the private subnets
        private_subnets = self.vpc.private_subnets
        self.instances: List[ec2.Instance] = []
        for index in range(blueprint.instance_count):
            subnet = private_subnets[index % len(private_subnets)]
            instance = ec2.Instance(
                self,
                f"Instance{index + 1}",
                instance_name=f"{blueprint.instance_name}-{index + 1}",
                vpc=self.vpc,
                vpc_subnets=ec2.SubnetSelection(subnets=[subnet]),
                instance_type=ec2.InstanceType(blueprint.instance_type),
                machine_image=ec2.MachineImage.latest_amazon_linux2023(),
                security_group=compute_sg,
                role=self.instance_role,
                user_data=user_data,
                detailed_monitoring=True,
                require_imdsv2=True,
                block_devices=[
                    ec2.BlockDevice(
                        device_name="/dev/xvda",
                        volume=ec2.BlockDeviceVolume.ebs(
                            volume_size=blueprint.volume_size_gb,
                            volume_type=ec2.EbsDeviceVolumeType.GP3,
                            encrypted=True,
                            delete_on_termination=True,
                        ),
                    )
                ],
            )
            self.instances.append(instance)

        # Application Load Balancer
        self.load_balancer = elbv2.ApplicationLoadBalancer(
            self,
            "LoadBalancer",
            vpc=self.vpc,
            internet_facing=True,
            vpc_subnets=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PUBLIC),
            security_group=load_balancer_sg,
        )

        self.frontend_target_group = self._create_target_group("FrontendTargetGroup", blueprint.frontend)
        self.backend_target_group = self._create_target_group("BackendTargetGroup", blueprint.backend)

        # Listener, ingress is owned by the load balancer boundary
        self.listener = self.load_balancer.add_listener(
            "Listener",
            port=blueprint.listener_port,
            protocol=elbv2.ApplicationProtocol.HTTP,
            open=False,
            default_target_groups=[self.frontend_target_group],
        )
        self.listener.add_target_groups(
            "ApiRule",
            priority=10,
            conditions=[elbv2.ListenerCondition.path_patterns([blueprint.api_path_pattern])],
            target_groups=[self.backend_target_group],
        )

        publish_outputs(self, {
            INSTANCE_IDS: Fn.join(",", [i.instance_id for i in self.instances]),
            LOAD_BALANCER_DNS: self.load_balancer.load_balancer_dns_name,
        })

        Tags.of(self).add("Application", blueprint.instance_name)

    def _user_data(self) -> ec2.UserData:
        """Write the runtime environment file and start the application units"""
        user_data = ec2.UserData.for_linux()
        env_lines = [f"{key}={value}" for key, value in self.blueprint.runtime_environment]
        user_data.add_commands(
            "dnf update -y",
            "dnf install -y amazon-cloudwatch-agent docker",
            "systemctl enable --now docker",
            f"mkdir -p {RUNTIME_ENV_FILE.rsplit('/', 1)[0]}",
            f"cat > {RUNTIME_ENV_FILE} << 'EOF'",
            *env_lines,
            "EOF",
            f"chmod 600 {RUNTIME_ENV_FILE}",
        )
        return user_data

    def _create_target_group(self, construct_id: str,
                             target_group: TargetGroupBlueprint) -> elbv2.ApplicationTargetGroup:
        check = target_group.health_check
        return elbv2.ApplicationTargetGroup(
            self,
            construct_id,
            vpc=self.vpc,
            port=target_group.port,
            protocol=elbv2.ApplicationProtocol.HTTP,
            targets=[targets.InstanceTarget(instance, target_group.port) for instance in self.instances],
            health_check=elbv2.HealthCheck(
                enabled=True,
                healthy_http_codes=check.healthy_http_codes,
                path=check.path,
                protocol=elbv2.Protocol.HTTP,
                timeout=Duration.seconds(check.timeout_seconds),
                interval=Duration.seconds(check.interval_seconds),
                healthy_threshold_count=check.healthy_threshold,
                unhealthy_threshold_count=check.unhealthy_threshold,
            ),
        )
