"""AKS on Azure Local: service-account token and token-based kubeconfig."""

import base64
import logging
import os
import subprocess
import time
from typing import Any, Dict, Optional

import yaml
from kubernetes import client, config  # type: ignore[import-untyped]
from kubernetes.client.exceptions import ApiException  # type: ignore[import-untyped]

from hybridlab.cloud import azure_cli
from hybridlab.config import Config

logger = logging.getLogger(__name__)

TOKEN_SECRET_TYPE = "kubernetes.io/service-account-token"


def _create_if_absent(create: Any, *args: Any, **kwargs: Any) -> bool:
    """Call a create_* API; a 409 means the object already exists. Returns True if created."""
    try:
        create(*args, **kwargs)
        return True
    except ApiException as e:
        if e.status == 409:
            return False
        raise


def render_token_kubeconfig(
    cluster_name: str, server: str, ca_data: Optional[str], user: str, token: str, namespace: str
) -> Dict[str, Any]:
    """Build a kubeconfig dict that authenticates with a bearer token."""
    cluster: Dict[str, Any] = {"server": server}
    if ca_data:
        cluster["certificate-authority-data"] = ca_data
    context = f"{user}@{cluster_name}"
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": cluster_name, "cluster": cluster}],
        "users": [{"name": user, "user": {"token": token}}],
        "contexts": [
            {"name": context, "context": {"cluster": cluster_name, "user": user, "namespace": namespace}}
        ],
        "current-context": context,
    }


class AksTokenHelper:
    """Creates an admin service account on an AKS Arc cluster and exports its token."""

    def __init__(
        self,
        cluster_name: Optional[str] = None,
        resource_group: Optional[str] = None,
        namespace: Optional[str] = None,
        service_account: Optional[str] = None,
    ) -> None:
        self.cluster_name = cluster_name or Config.AKS_CLUSTER_NAME
        self.resource_group = resource_group or Config.AZURE_RESOURCE_GROUP
        self.namespace = namespace or Config.AKS_NAMESPACE
        self.service_account = service_account or Config.AKS_SERVICE_ACCOUNT
        self.secret_name = f"{self.service_account}-token"

    def get_admin_kubeconfig(self, path: str) -> str:
        """
        Fetch the admin kubeconfig with the Azure CLI.

        Raises:
            RuntimeError: If the az command fails or times out
        """
        try:
            subprocess.run(
                [
                    azure_cli(), "aksarc", "get-credentials",
                    "--resource-group", self.resource_group,
                    "--name", self.cluster_name,
                    "--file", path,
                    "--admin",
                ],
                capture_output=True,
                check=True,
                timeout=120,
            )
            logger.info(f"Fetched admin kubeconfig for {self.cluster_name}")
            return path
        except subprocess.CalledProcessError as e:
            logger.error(f"Failed to get AKS credentials: {e.stderr.decode()}")
            raise RuntimeError(f"Failed to get AKS credentials for {self.cluster_name}: {e}")
        except subprocess.TimeoutExpired:
            raise RuntimeError("Timeout getting AKS credentials")

    def ensure_service_account(self) -> None:
        core = client.CoreV1Api()
        rbac = client.RbacAuthorizationV1Api()

        if _create_if_absent(
            core.create_namespace, client.V1Namespace(metadata=client.V1ObjectMeta(name=self.namespace))
        ):
            print(f"🆕 Created namespace {self.namespace}")

        if _create_if_absent(
            core.create_namespaced_service_account,
            self.namespace,
            client.V1ServiceAccount(metadata=client.V1ObjectMeta(name=self.service_account)),
        ):
            print(f"🆕 Created service account {self.service_account}")

        binding = client.V1ClusterRoleBinding(
            metadata=client.V1ObjectMeta(name=f"{self.service_account}-binding"),
            role_ref=client.V1RoleRef(
                api_group="rbac.authorization.k8s.io", kind="ClusterRole", name=Config.AKS_CLUSTER_ROLE
            ),
            subjects=[
                client.RbacV1Subject(kind="ServiceAccount", name=self.service_account, namespace=self.namespace)
            ],
        )
        if _create_if_absent(rbac.create_cluster_role_binding, binding):
            print(f"🔐 Bound {self.service_account} to {Config.AKS_CLUSTER_ROLE}")

        secret = client.V1Secret(
            metadata=client.V1ObjectMeta(
                name=self.secret_name,
                annotations={"kubernetes.io/service-account.name": self.service_account},
            ),
            type=TOKEN_SECRET_TYPE,
        )
        _create_if_absent(core.create_namespaced_secret, self.namespace, secret)

    def read_token(self, attempts: int = 10, interval: float = 2.0) -> str:
        """Wait for the token controller to fill the secret, then return the decoded token."""
        core = client.CoreV1Api()
        for attempt in range(attempts):
            secret = core.read_namespaced_secret(self.secret_name, self.namespace)
            encoded = (secret.data or {}).get("token")
            if encoded:
                return base64.b64decode(encoded).decode()
            if attempt < attempts - 1:
                time.sleep(interval)
        raise RuntimeError(f"Secret {self.namespace}/{self.secret_name} has no token")

    def write_kubeconfig(self, admin_kubeconfig: str, token: str, path: str) -> str:
        with open(admin_kubeconfig) as f:
            admin = yaml.safe_load(f)
        cluster = admin["clusters"][0]["cluster"]

        kubeconfig = render_token_kubeconfig(
            self.cluster_name,
            cluster["server"],
            cluster.get("certificate-authority-data"),
            self.service_account,
            token,
            self.namespace,
        )
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(kubeconfig, f, default_flow_style=False)
        os.chmod(path, 0o600)
        return path

    def get_token(self, kubeconfig_path: Optional[str] = None) -> str:
        """
        Produce a service-account token and a kubeconfig that uses it.

        Returns:
            The bearer token
        """
        path = os.path.expanduser(kubeconfig_path or Config.KUBECONFIG_PATH)
        admin_path = path + ".admin"

        print(f"🔑 Fetching admin credentials for {self.cluster_name}")
        try:
            self.get_admin_kubeconfig(admin_path)
            config.load_kube_config(config_file=admin_path)

            self.ensure_service_account()
            token = self.read_token()
            self.write_kubeconfig(admin_path, token, path)
        finally:
            # admin credentials never outlive the run
            if os.path.exists(admin_path):
                os.remove(admin_path)
        print(f"✅ Token kubeconfig written to {path}")
        return token
