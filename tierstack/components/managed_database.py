from aws_cdk import (
    aws_rds as rds,
    aws_ec2 as ec2,
    aws_secretsmanager as secretsmanager,
    aws_kms as kms,
    RemovalPolicy,
    Duration,
    Tags
)
from constructs import Construct

from tierstack.components.base import import_boundary, import_network, publish_outputs
from tierstack.stacks.database_stack import (
    BOUNDARY_ID,
    ENDPOINT,
    INSTANCE_ID,
    PORT,
    SECRET_ARN,
    DatabaseBlueprint,
)


def database_engine(engine: str, version: str) -> rds.IInstanceEngine:
    if engine == "postgres":
        return rds.DatabaseInstanceEngine.postgres(
            version=rds.PostgresEngineVersion.of(version, version.split(".")[0])
        )
    if engine == "mysql":
        return rds.DatabaseInstanceEngine.mysql(
            version=rds.MysqlEngineVersion.of(version, ".".join(version.split(".")[:2]))
        )
    raise ValueError(f"Unsupported database engine: {engine}")


class ManagedDatabase(Construct):
    """
    Encrypted RDS instance in the private tier with credentials in Secrets Manager.
    Only the compute security group may connect.
    """

    def __init__(self, scope: Construct, construct_id: str,
                 blueprint: DatabaseBlueprint,
                 **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        self.vpc = import_network(self, "Network",
            network_id=blueprint.network_id,
            availability_zones=blueprint.availability_zones,
            private_subnet_ids=blueprint.private_subnet_ids
        )
        compute_sg = import_boundary(self, "ComputeBoundary", blueprint.compute_boundary_id)

        # KMS key for database encryption
        self.db_key = kms.Key(self, "DatabaseKey",
            description=f"KMS key for {blueprint.instance_identifier}",
            enable_key_rotation=True,
            removal_policy=RemovalPolicy.RETAIN
        )

        # Database credentials in Secrets Manager
        self.db_secret = secretsmanager.Secret(self, "DatabaseSecret",
            secret_name=blueprint.secret_name,
            description=f"Credentials for {blueprint.instance_identifier}",
            generate_secret_string=secretsmanager.SecretStringGenerator(
                secret_string_template=f'{{"username": "{blueprint.username}"}}',
                generate_string_key="password",
                exclude_characters=" %+~`#$&*()|[]{}:;<>?!'/@\"\\",
                password_length=32
            ),
            encryption_key=self.db_key
        )

        # Database security group, reachable from compute only
        self.db_sg = ec2.SecurityGroup(self, "DatabaseSG",
            vpc=self.vpc,
            security_group_name=blueprint.boundary_name,
            description=f"Database access for {blueprint.instance_identifier}",
            allow_all_outbound=False
        )
        self.db_sg.add_ingress_rule(
            peer=compute_sg,
            connection=ec2.Port.tcp(blueprint.port),
            description="Database access from compute"
        )

        self.subnet_group = rds.SubnetGroup(self, "DatabaseSubnetGroup",
            description=f"Private subnets for {blueprint.instance_identifier}",
            vpc=self.vpc,
            vpc_subnets=ec2.SubnetSelection(
                subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS
            )
        )

        self.database = rds.DatabaseInstance(self, "Database",
            instance_identifier=blueprint.instance_identifier,
            engine=database_engine(blueprint.engine, blueprint.engine_version),
            instance_type=ec2.InstanceType(blueprint.instance_class.removeprefix("db.")),
            vpc=self.vpc,
            subnet_group=self.subnet_group,
            security_groups=[self.db_sg],
            credentials=rds.Credentials.from_secret(self.db_secret),
            database_name=blueprint.database_name,
            port=blueprint.port,
            allocated_storage=blueprint.allocated_storage_gb,
            storage_type=rds.StorageType.GP3,
            storage_encrypted=blueprint.storage_encrypted,
            storage_encryption_key=self.db_key,
            publicly_accessible=blueprint.publicly_accessible,
            multi_az=blueprint.multi_az,
            backup_retention=Duration.days(blueprint.backup_retention_days),
            preferred_backup_window="03:00-04:00",
            preferred_maintenance_window="sun:04:00-sun:05:00",
            enable_performance_insights=blueprint.performance_insights,
            auto_minor_version_upgrade=True,
            allow_major_version_upgrade=False,
            deletion_protection=blueprint.deletion_protection,
            delete_automated_backups=False,
            removal_policy=(
                RemovalPolicy.SNAPSHOT if blueprint.deletion_protection else RemovalPolicy.DESTROY
            )
        )

        publish_outputs(self, {
            INSTANCE_ID: self.database.instance_identifier,
            ENDPOINT: self.database.db_instance_endpoint_address,
            PORT: self.database.db_instance_endpoint_port,
            SECRET_ARN: self.db_secret.secret_arn,
            BOUNDARY_ID: self.db_sg.security_group_id,
        })

        Tags.of(self).add("Backup", "Automated")
